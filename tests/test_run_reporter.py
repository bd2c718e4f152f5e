import json
from datetime import datetime, timezone

import pytest

from ci_healer.core.constants import BugType, CiStatus, FixStatus
from ci_healer.core.errors import ValidationError
from ci_healer.models.results import CiIteration, FixEntry, RunDraft
from ci_healer.services.run_reporter import RunReporter

TS = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _draft(**overrides):
    fields = dict(
        repository_url="https://github.com/o/r",
        team_name="Team",
        team_leader="Lead",
        branch_name="TEAM_LEAD_AI_Fix",
        retry_limit=3,
        total_failures=1,
        total_fixes_applied=1,
        commit_count=1,
        total_time_seconds=42.0,
        ci_timeline=[
            CiIteration(iteration=1, status=CiStatus.FAILED, timestamp=TS),
            CiIteration(iteration=2, status=CiStatus.PASSED, timestamp=TS),
        ],
        fixes=[
            FixEntry(
                file="src/utils.py", bug_type=BugType.LINTING, line_number=15,
                commit_message="[AI-AGENT] LINTING error in src/utils.py line 15 → Fix: remove the unused import statement",
                status=FixStatus.FIXED,
            ),
        ],
    )
    fields.update(overrides)
    return RunDraft(**fields)


def test_finalize_valid_draft():
    results = RunReporter().finalize(_draft())

    assert results.final_ci_status == CiStatus.PASSED
    assert results.base_score == 100
    assert results.final_score >= 0


def test_finalized_record_is_immutable():
    results = RunReporter().finalize(_draft())
    with pytest.raises(Exception):
        results.final_score = 0


def test_finalize_is_deterministic():
    reporter = RunReporter()
    assert reporter.finalize(_draft()) == reporter.finalize(_draft())


@pytest.mark.parametrize("overrides,fragment", [
    ({"total_fixes_applied": 0}, "total_fixes_applied"),
    ({"total_failures": 5}, "total_failures"),
    ({"commit_count": 0}, "commit_count"),
    ({"ci_timeline": []}, "empty"),
    ({"retry_limit": 0}, "retry_limit"),
    ({"total_time_seconds": -1.0}, "total_time_seconds"),
])
def test_finalize_rejects_violations(overrides, fragment):
    with pytest.raises(ValidationError) as exc_info:
        RunReporter().finalize(_draft(**overrides))
    assert any(fragment in v for v in exc_info.value.violations)


def test_timeline_gap_rejected():
    timeline = [
        CiIteration(iteration=1, status=CiStatus.FAILED, timestamp=TS),
        CiIteration(iteration=3, status=CiStatus.PASSED, timestamp=TS),
    ]
    violations = RunReporter.check_invariants(_draft(ci_timeline=timeline))
    assert any("expected 2" in v for v in violations)


def test_timeline_longer_than_limit_rejected():
    timeline = [CiIteration(iteration=i, status=CiStatus.FAILED, timestamp=TS) for i in range(1, 6)]
    violations = RunReporter.check_invariants(_draft(ci_timeline=timeline, retry_limit=3))
    assert any("limit" in v for v in violations)


def test_write_results_uses_camel_case(tmp_path):
    results = RunReporter().finalize(_draft())
    path = RunReporter.write_results(results, str(tmp_path / "out" / "results.json"))

    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    assert data["repositoryUrl"] == "https://github.com/o/r"
    assert data["finalCiStatus"] == "PASSED"
    assert data["ciTimeline"][0] == {"iteration": 1, "status": "FAILED", "timestamp": "2024-01-01T12:00:00Z"}
    assert data["fixes"][0]["bugType"] == "LINTING"
    assert data["fixes"][0]["lineNumber"] == 15
    assert data["fixes"][0]["commitMessage"].startswith("[AI-AGENT] LINTING")
    assert set(data) >= {
        "totalFailures", "totalFixesApplied", "commitCount", "retryLimit",
        "totalTimeSeconds", "baseScore", "speedBonus", "efficiencyPenalty", "finalScore",
    }
