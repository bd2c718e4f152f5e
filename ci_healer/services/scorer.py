"""
Scorer
======
Pure scoring functions over a completed (non-aborted) run draft.

    base_score         = 100 if PASSED
                         else 50 * fixed / total_failures  (0 without failures)
    speed_bonus        = 10 * max(0, 1 - total_time_seconds / 300)
                         + 5 / len(ci_timeline)              (PASSED only)
    efficiency_penalty = 2 * failed_fixes
                         + 1 * (len(ci_timeline) - 1)
                         + 2 * max(0, commit_count - 20)
    final_score        = max(0, base + speed - penalty)

The commit term only fires when MAX_COMMITS_PER_RUN is raised above
COMMIT_ALLOWANCE: at the default cap of 20 the fix applier refuses the 21st
commit, so the term is zero for default runs.

All values are rounded to two decimals. Nothing here reads a clock, touches
the filesystem or mutates the draft: the same draft always scores the same.
"""
from dataclasses import dataclass

from ci_healer.core.constants import CiStatus
from ci_healer.models.results import RunDraft

MAX_BASE_SCORE = 100.0
PARTIAL_BASE_SCORE = 50.0

SPEED_WINDOW_SECONDS = 300.0
TIME_BONUS = 10.0
CYCLE_BONUS = 5.0

FAILED_FIX_PENALTY = 2.0
EXTRA_ITERATION_PENALTY = 1.0
COMMIT_ALLOWANCE = 20
EXTRA_COMMIT_PENALTY = 2.0


@dataclass(frozen=True)
class Score:
    base_score: float
    speed_bonus: float
    efficiency_penalty: float
    final_score: float


def compute_base_score(draft: RunDraft) -> float:
    if draft.final_ci_status == CiStatus.PASSED:
        return MAX_BASE_SCORE
    if draft.total_failures <= 0:
        return 0.0
    return PARTIAL_BASE_SCORE * draft.total_fixes_applied / draft.total_failures


def compute_speed_bonus(draft: RunDraft) -> float:
    if draft.final_ci_status != CiStatus.PASSED:
        return 0.0
    time_part = TIME_BONUS * max(0.0, 1.0 - draft.total_time_seconds / SPEED_WINDOW_SECONDS)
    cycle_part = CYCLE_BONUS / max(1, len(draft.ci_timeline))
    return time_part + cycle_part


def compute_efficiency_penalty(draft: RunDraft) -> float:
    extra_iterations = max(0, len(draft.ci_timeline) - 1)
    extra_commits = max(0, draft.commit_count - COMMIT_ALLOWANCE)
    return (
        FAILED_FIX_PENALTY * draft.failed_fix_count
        + EXTRA_ITERATION_PENALTY * extra_iterations
        + EXTRA_COMMIT_PENALTY * extra_commits
    )


def score(draft: RunDraft) -> Score:
    """Compute all four score fields for a finished draft."""
    base = compute_base_score(draft)
    speed = compute_speed_bonus(draft)
    penalty = compute_efficiency_penalty(draft)
    final = max(0.0, base + speed - penalty)
    return Score(
        base_score=round(base, 2),
        speed_bonus=round(speed, 2),
        efficiency_penalty=round(penalty, 2),
        final_score=round(final, 2),
    )
