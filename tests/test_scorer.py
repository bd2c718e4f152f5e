from datetime import datetime, timezone

import pytest

from ci_healer.core.config import MAX_COMMITS_PER_RUN
from ci_healer.core.constants import BugType, CiStatus, FixStatus
from ci_healer.models.results import CiIteration, FixEntry, RunDraft
from ci_healer.services.scorer import (
    COMMIT_ALLOWANCE,
    compute_base_score,
    compute_efficiency_penalty,
    compute_speed_bonus,
    score,
)

TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _draft(statuses, fixes=(), total_time=60.0, commit_count=None):
    entries = [
        FixEntry(
            file="a.py", bug_type=BugType.LINTING, line_number=i + 1,
            commit_message="[AI-AGENT] msg", status=status,
        )
        for i, status in enumerate(fixes)
    ]
    fixed = sum(1 for s in fixes if s == FixStatus.FIXED)
    return RunDraft(
        repository_url="https://github.com/o/r",
        team_name="T",
        team_leader="L",
        branch_name="T_L_AI_Fix",
        retry_limit=5,
        total_failures=len(entries),
        total_fixes_applied=fixed,
        commit_count=fixed if commit_count is None else commit_count,
        total_time_seconds=total_time,
        ci_timeline=[CiIteration(iteration=i + 1, status=s, timestamp=TS) for i, s in enumerate(statuses)],
        fixes=entries,
    )


def test_passed_first_try():
    result = score(_draft([CiStatus.PASSED], total_time=0))
    assert result.base_score == 100
    assert result.speed_bonus == 15
    assert result.efficiency_penalty == 0
    assert result.final_score == 115


def test_passed_after_fixes():
    draft = _draft(
        [CiStatus.FAILED, CiStatus.PASSED],
        fixes=[FixStatus.FIXED, FixStatus.FAILED],
        total_time=150,
    )
    result = score(draft)
    assert result.base_score == 100
    assert result.speed_bonus == pytest.approx(5 + 2.5)
    assert result.efficiency_penalty == pytest.approx(2 + 1)
    assert result.final_score == pytest.approx(104.5)


def test_failed_run_partial_base_and_no_speed():
    draft = _draft(
        [CiStatus.FAILED, CiStatus.FAILED],
        fixes=[FixStatus.FIXED, FixStatus.FIXED, FixStatus.FAILED, FixStatus.FAILED],
    )
    assert compute_base_score(draft) == pytest.approx(25.0)
    assert compute_speed_bonus(draft) == 0
    assert score(draft).final_score == pytest.approx(25 - 4 - 1)


def test_failed_run_without_failures_scores_zero_base():
    assert compute_base_score(_draft([CiStatus.FAILED])) == 0


def test_final_score_floored_at_zero():
    draft = _draft([CiStatus.FAILED] * 5, fixes=[FixStatus.FAILED] * 10)
    assert score(draft).final_score == 0


def test_commit_overage_penalised():
    draft = _draft([CiStatus.PASSED], commit_count=23)
    assert compute_efficiency_penalty(draft) == pytest.approx(6)


def test_commits_at_default_cap_not_penalised():
    draft = _draft([CiStatus.PASSED], commit_count=MAX_COMMITS_PER_RUN)
    assert MAX_COMMITS_PER_RUN <= COMMIT_ALLOWANCE
    assert compute_efficiency_penalty(draft) == pytest.approx(0)


def test_speed_bonus_decreases_with_time():
    fast = compute_speed_bonus(_draft([CiStatus.PASSED], total_time=10))
    slow = compute_speed_bonus(_draft([CiStatus.PASSED], total_time=200))
    very_slow = compute_speed_bonus(_draft([CiStatus.PASSED], total_time=10_000))
    assert fast > slow > very_slow >= 0


def test_speed_bonus_decreases_with_iterations():
    one = compute_speed_bonus(_draft([CiStatus.PASSED]))
    three = compute_speed_bonus(_draft([CiStatus.FAILED, CiStatus.FAILED, CiStatus.PASSED]))
    assert one > three


def test_penalty_increases_with_failed_fixes():
    few = compute_efficiency_penalty(_draft([CiStatus.FAILED], fixes=[FixStatus.FAILED]))
    many = compute_efficiency_penalty(_draft([CiStatus.FAILED], fixes=[FixStatus.FAILED] * 3))
    assert many > few


def test_score_is_pure():
    draft = _draft([CiStatus.FAILED, CiStatus.PASSED], fixes=[FixStatus.FIXED], total_time=42)
    before = draft.model_dump()
    assert score(draft) == score(draft)
    assert draft.model_dump() == before
