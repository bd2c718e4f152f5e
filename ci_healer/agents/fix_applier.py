"""
Fix Applier
===========
Turns one classified failure into at most one commit.

The applier does NOT decide how a bug is fixed: a FixGenerator collaborator
(an LLM, a static fixer, a suggestion service) proposes the patched file
content. The applier decides whether that proposal is safe to commit, commits
it with the canonical message, and records the outcome.

Contract:
    apply(failure) -> FixOutcome   (FixOutcome.entry is the FixEntry)

    - Idempotent per (file, line_number, bug_type) within a run: a location
      already FIXED is a no-op that reports FIXED with an empty diff and
      makes no commit.
    - Exactly one commit per successful fix, zero otherwise.
    - Cannot produce a change → FAILED entry, never an exception.
    - Version-control exhaustion (VersionControlUnavailable) propagates:
      that is an infrastructure failure, not a fix outcome.

Safety Gates (each yields FAILED):
    - per-run commit cap reached
    - file missing, unreadable or outside the workspace
    - merge conflict markers in the file
    - generator error or "no fix available"
    - proposal identical to the current content
    - diff larger than max_diff_lines
"""
import asyncio
import difflib
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from ci_healer.agents.git_agent import GitAgent
from ci_healer.core.config import MAX_COMMITS_PER_RUN, MAX_DIFF_LINES
from ci_healer.core.constants import BugType, FixStatus
from ci_healer.core.output_formatter import format_commit_message
from ci_healer.models.failure import ClassifiedFailure
from ci_healer.models.results import FixEntry
from ci_healer.utils.fix_fingerprint import compute_patch_hash, generate_location_signature
from ci_healer.utils.escalation_reasons import (
    COMMIT_CAP,
    DIFF_TOO_LARGE,
    FILE_UNREADABLE,
    GENERATOR_ERROR,
    MERGE_CONFLICT,
    NO_CHANGE,
    NO_FIX_AVAILABLE,
    OUT_OF_SCOPE,
)

logger = logging.getLogger(__name__)

_CONFLICT_MARKER_RE = re.compile(r'^(<{7}|>{7})(\s|$)', re.MULTILINE)
_SNIPPET_CONTEXT = 3


@dataclass(frozen=True)
class FixContext:
    """What a fix generator gets to look at besides the location."""
    workspace_path: str
    file_content: str
    snippet: str
    message: str = ""
    sub_type: str = "generic"


class FixGenerator(Protocol):
    """Proposes patched file content for one failure, or None."""

    async def propose(
        self,
        bug_type: BugType,
        file: str,
        line_number: int,
        context: FixContext,
    ) -> Optional[str]:
        ...


@dataclass(frozen=True)
class FixOutcome:
    entry: FixEntry
    diff: str = ""
    patch_hash: str = ""
    commit_sha: str = ""
    noop: bool = False
    reason: str = ""


class FixApplier:
    """
    Applies generated fixes to the workspace, one commit per fix.

    Parameters
    ----------
    generator : FixGenerator
        Fix-generation collaborator.
    git_agent : GitAgent
        Version-control collaborator bound to the run's workspace.
    max_commits : int
        Per-run commit cap.
    max_diff_lines : int
        Largest accepted patch, in added + removed lines.
    """

    def __init__(
        self,
        generator: FixGenerator,
        git_agent: GitAgent,
        max_commits: int = MAX_COMMITS_PER_RUN,
        max_diff_lines: int = MAX_DIFF_LINES,
    ) -> None:
        self.generator = generator
        self.git_agent = git_agent
        self.max_commits = max_commits
        self.max_diff_lines = max_diff_lines
        # location signature → FIXED entry
        self._fixed: Dict[str, FixEntry] = {}

    @property
    def commit_count(self) -> int:
        return self.git_agent.commit_count

    async def apply(self, failure: ClassifiedFailure) -> FixOutcome:
        """Attempt one fix. See module docstring for the contract."""
        signature = self._signature(failure)
        if signature in self._fixed:
            logger.info(
                "Location %s:%d (%s) already fixed, no-op",
                failure.file, failure.line_number, failure.bug_type.value,
            )
            return FixOutcome(entry=self._fixed[signature], noop=True)

        commit_message = format_commit_message(
            failure.bug_type, failure.file, failure.line_number, failure.sub_type
        )

        if self.git_agent.commit_count >= self.max_commits:
            logger.error("Max commit limit reached (%d), blocking further fixes", self.max_commits)
            return self._failed(failure, commit_message, COMMIT_CAP)

        try:
            original = await asyncio.to_thread(self.git_agent.read_file, failure.file)
        except ValueError:
            logger.error("Refusing to touch path outside workspace: %s", failure.file)
            return self._failed(failure, commit_message, OUT_OF_SCOPE)
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Failed to read %s: %s", failure.file, exc)
            return self._failed(failure, commit_message, FILE_UNREADABLE)

        if _CONFLICT_MARKER_RE.search(original):
            logger.warning("Merge conflict markers in %s, manual fix required", failure.file)
            return self._failed(failure, commit_message, MERGE_CONFLICT)

        context = FixContext(
            workspace_path=self.git_agent.workspace_path,
            file_content=original,
            snippet=self._extract_snippet(original, failure.line_number),
            message=failure.message,
            sub_type=failure.sub_type,
        )

        try:
            patched = await self.generator.propose(
                failure.bug_type, failure.file, failure.line_number, context
            )
        except Exception:
            logger.exception("Fix generator failed for %s:%d", failure.file, failure.line_number)
            return self._failed(failure, commit_message, GENERATOR_ERROR)

        if patched is None:
            return self._failed(failure, commit_message, NO_FIX_AVAILABLE)

        diff = self._compute_diff(original, patched, failure.file)
        if not diff:
            return self._failed(failure, commit_message, NO_CHANGE)
        if not self._check_diff_size(diff, self.max_diff_lines):
            logger.warning("Patch for %s exceeds %d changed lines", failure.file, self.max_diff_lines)
            return self._failed(failure, commit_message, DIFF_TOO_LARGE)

        commit_sha = await asyncio.to_thread(
            self.git_agent.commit_changes, {failure.file: patched}, commit_message
        )
        if not commit_sha:
            return self._failed(failure, commit_message, NO_CHANGE)

        entry = FixEntry(
            file=failure.file,
            bug_type=failure.bug_type,
            line_number=failure.line_number,
            commit_message=commit_message,
            status=FixStatus.FIXED,
        )
        self._fixed[signature] = entry
        logger.info("FIXED %s:%d (%s) in %s", failure.file, failure.line_number, failure.bug_type.value, commit_sha[:8])
        return FixOutcome(
            entry=entry,
            diff=diff,
            patch_hash=compute_patch_hash(diff),
            commit_sha=commit_sha,
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    @staticmethod
    def _signature(failure: ClassifiedFailure) -> str:
        return generate_location_signature(failure.file, failure.line_number, failure.bug_type)

    @staticmethod
    def _failed(failure: ClassifiedFailure, commit_message: str, reason: str) -> FixOutcome:
        logger.info("Fix FAILED for %s:%d: %s", failure.file, failure.line_number, reason)
        entry = FixEntry(
            file=failure.file,
            bug_type=failure.bug_type,
            line_number=failure.line_number,
            commit_message=commit_message,
            status=FixStatus.FAILED,
        )
        return FixOutcome(entry=entry, reason=reason)

    @staticmethod
    def _extract_snippet(content: str, line_number: int, context: int = _SNIPPET_CONTEXT) -> str:
        """Extract ±context lines around line_number, prefixed with line numbers."""
        lines = content.splitlines()
        if not lines:
            return ""

        idx = max(0, min(line_number - 1, len(lines) - 1))
        start = max(0, idx - context)
        end = min(len(lines), idx + context + 1)

        snippet_lines: list[str] = []
        for i in range(start, end):
            prefix = ">>>" if i + 1 == line_number else "   "
            snippet_lines.append(f"{prefix} {i + 1:4} | {lines[i]}")
        return "\n".join(snippet_lines)

    @staticmethod
    def _compute_diff(original: str, patched: str, file_path: str) -> str:
        """Unified diff between original and patched content."""
        diff = difflib.unified_diff(
            original.splitlines(keepends=True),
            patched.splitlines(keepends=True),
            fromfile=f"a/{file_path}",
            tofile=f"b/{file_path}",
            lineterm="",
        )
        return "\n".join(diff)

    @staticmethod
    def _check_diff_size(diff: str, threshold: int) -> bool:
        """True if the added + removed line count is within threshold."""
        changed_lines = 0
        for line in diff.splitlines():
            if line.startswith("---") or line.startswith("+++"):
                continue
            if line.startswith("+") or line.startswith("-"):
                changed_lines += 1
        return changed_lines <= threshold


class NoFixGenerator:
    """Generator that never proposes a fix. Every attempt ends FAILED."""

    async def propose(
        self,
        bug_type: BugType,
        file: str,
        line_number: int,
        context: FixContext,
    ) -> Optional[str]:
        return None
