"""
Run Reporter
============
Turns the controller's finished draft into the immutable AgentResults record
and exports it as results.json for the persistence collaborator.

An invariant violation here means the controller produced an impossible
history. It is always fatal and never retried.
"""
import json
import logging
import os
from typing import List

import pydantic

from ci_healer.core.constants import FixStatus
from ci_healer.core.errors import ValidationError
from ci_healer.models.results import AgentResults, RunDraft
from ci_healer.services.scorer import score

logger = logging.getLogger(__name__)


class RunReporter:
    """Validates, scores and freezes a completed run."""

    def finalize(self, draft: RunDraft) -> AgentResults:
        """
        Validate ``draft`` and return the scored, immutable record.

        Raises
        ------
        ValidationError
            When any results invariant is violated.
        """
        violations = self.check_invariants(draft)
        if violations:
            logger.error("Run draft failed validation: %s", "; ".join(violations))
            raise ValidationError(violations)

        result_score = score(draft)
        try:
            results = AgentResults(
                repository_url=draft.repository_url,
                team_name=draft.team_name,
                team_leader=draft.team_leader,
                branch_name=draft.branch_name,
                total_failures=draft.total_failures,
                total_fixes_applied=draft.total_fixes_applied,
                commit_count=draft.commit_count,
                retry_limit=draft.retry_limit,
                final_ci_status=draft.final_ci_status,
                total_time_seconds=draft.total_time_seconds,
                base_score=result_score.base_score,
                speed_bonus=result_score.speed_bonus,
                efficiency_penalty=result_score.efficiency_penalty,
                final_score=result_score.final_score,
                ci_timeline=list(draft.ci_timeline),
                fixes=list(draft.fixes),
            )
        except pydantic.ValidationError as e:
            raise ValidationError([err["msg"] for err in e.errors()]) from e

        logger.info(
            "Run finalized: %s after %d iteration(s), final score %.2f",
            results.final_ci_status.value, len(results.ci_timeline), results.final_score,
        )
        return results

    @staticmethod
    def check_invariants(draft: RunDraft) -> List[str]:
        """Return a human-readable list of violated invariants (empty if valid)."""
        violations: List[str] = []

        for name in ("total_failures", "total_fixes_applied", "commit_count"):
            if getattr(draft, name) < 0:
                violations.append(f"{name} is negative")
        if draft.retry_limit < 1:
            violations.append("retry_limit must be at least 1")
        if draft.total_time_seconds < 0:
            violations.append("total_time_seconds is negative")

        timeline = draft.ci_timeline
        if not timeline:
            violations.append("ci_timeline is empty")
        elif len(timeline) > draft.retry_limit + 1:
            violations.append(
                f"ci_timeline has {len(timeline)} entries, limit is {draft.retry_limit + 1}"
            )
        for idx, item in enumerate(timeline):
            if item.iteration != idx + 1:
                violations.append(f"ci_timeline[{idx}].iteration is {item.iteration}, expected {idx + 1}")
                break

        fixed = sum(1 for f in draft.fixes if f.status == FixStatus.FIXED)
        if draft.total_fixes_applied != fixed:
            violations.append(
                f"total_fixes_applied is {draft.total_fixes_applied}, {fixed} fixes are FIXED"
            )
        if draft.total_failures != len(draft.fixes):
            violations.append(
                f"total_failures is {draft.total_failures}, {len(draft.fixes)} fixes recorded"
            )
        if draft.commit_count < draft.total_fixes_applied:
            violations.append("commit_count is lower than total_fixes_applied")

        return violations

    @staticmethod
    def write_results(results: AgentResults, output_path: str = "results.json") -> str:
        """
        Write results.json (camelCase wire shape) and return its absolute path.
        """
        abs_output = os.path.abspath(output_path)
        parent = os.path.dirname(abs_output)
        if parent:
            os.makedirs(parent, exist_ok=True)

        logger.info("Writing final results to %s", abs_output)
        with open(abs_output, "w", encoding="utf-8") as f:
            json.dump(results.to_wire(), f, indent=2)
        return abs_output
