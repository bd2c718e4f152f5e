"""
Git Agent
=========
Version-control collaborator: branch handling, committing fixes, pushing.
Enforces naming conventions and safety limits.

Transient write conflicts (a held index.lock, a rejected push) are retried
locally with bounded backoff; exhaustion raises VersionControlUnavailable,
which aborts the run.
"""
import os
import re
import subprocess
import logging
import time
import unicodedata
from typing import Dict, List

from ci_healer.core.config import LEADER_NAME, TEAM_NAME, VCS_MAX_ATTEMPTS
from ci_healer.core.constants import PROTECTED_BRANCHES
from ci_healer.core.errors import VersionControlUnavailable

logger = logging.getLogger(__name__)

_COMMIT_IDENTITY = [
    "-c", "user.name=AI Agent",
    "-c", "user.email=ai-agent@users.noreply.github.com",
]


class GitAgent:
    """
    Applies file changes to the local workspace as commits and pushes them
    to the remote repository.

    One GitAgent serves one run; it assumes exclusive ownership of the
    branch for the run's duration.
    """

    def __init__(
        self,
        workspace_path: str,
        max_attempts: int = VCS_MAX_ATTEMPTS,
        retry_delay_seconds: float = 2.0,
    ) -> None:
        self.workspace_path = os.path.abspath(workspace_path)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.commit_count = 0

    # -------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------
    @staticmethod
    def generate_branch_name(team_name: str = TEAM_NAME, leader_name: str = LEADER_NAME) -> str:
        """
        Generate a deterministic branch name: TEAM_NAME_LEADER_NAME_AI_Fix
        """
        def clean(s: str) -> str:
            s = unicodedata.normalize("NFKD", s)
            s = "".join(c for c in s if not unicodedata.combining(c))
            s = re.sub(r"[^A-Za-z0-9]", " ", s).strip()
            return re.sub(r"\s+", "_", s).upper()

        parts = [p for p in [clean(team_name), clean(leader_name), "AI", "Fix"] if p]
        return "_".join(parts)

    @staticmethod
    def validate_branch_name(name: str) -> bool:
        """Validate branch name follows exact format: [A-Z0-9_]+_AI_Fix"""
        return bool(re.match(r"^[A-Z0-9_]+_AI_Fix$", name))

    def branch_exists(self, branch: str) -> bool:
        res = self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return res.returncode == 0

    def checkout_branch(self, branch: str) -> None:
        """Checkout the branch, creating it from HEAD when missing."""
        if self.branch_exists(branch):
            self._git("checkout", branch)
        else:
            self._git("checkout", "-b", branch)
        logger.info("Checked out branch: %s", branch)

    # -------------------------------------------------------------------
    # Commits
    # -------------------------------------------------------------------
    def commit_changes(self, changes: Dict[str, str], message: str) -> str:
        """
        Write ``changes`` (repo-relative path → full content), stage and
        commit them in one commit.

        Returns
        -------
        str
            The new commit SHA, or "" when the files already held that
            content and nothing was committed.

        Raises
        ------
        VersionControlUnavailable
            When the commit kept failing after bounded retries.
        """
        paths: List[str] = []
        for rel_path, content in changes.items():
            abs_path = self.resolve(rel_path)
            with open(abs_path, "w", encoding="utf-8") as f:
                f.write(content)
            paths.append(rel_path)

        for attempt in range(1, self.max_attempts + 1):
            try:
                self._git("add", "--", *paths)

                # returncode 0 = NO staged differences → nothing to commit
                if self._git("diff", "--cached", "--quiet", check=False).returncode == 0:
                    logger.info("No staged changes for %s, skipping commit", ", ".join(paths))
                    return ""

                self._git(*_COMMIT_IDENTITY, "commit", "-m", message)
                self.commit_count += 1
                sha = self.get_last_commit_sha()
                logger.info("Committed %s: %s", sha[:8], message)
                return sha
            except subprocess.CalledProcessError as e:
                logger.warning(
                    "Commit attempt %d/%d failed: %s", attempt, self.max_attempts, (e.stderr or "").strip()
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_delay_seconds * attempt)

        raise VersionControlUnavailable(f"Commit failed after {self.max_attempts} attempts: {message}")

    def get_last_commit_sha(self) -> str:
        """Get the SHA of the HEAD commit."""
        return self._git("rev-parse", "HEAD").stdout.strip()

    def read_file(self, rel_path: str) -> str:
        with open(self.resolve(rel_path), "r", encoding="utf-8") as f:
            return f.read()

    def resolve(self, rel_path: str) -> str:
        """
        Absolute path of a repo-relative file.
        Raises ValueError for paths escaping the workspace.
        """
        abs_path = os.path.normpath(os.path.join(self.workspace_path, rel_path))
        if os.path.commonpath([abs_path, self.workspace_path]) != self.workspace_path:
            raise ValueError(f"Path escapes workspace: {rel_path}")
        return abs_path

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------
    def push(self, branch: str) -> None:
        """
        Push local commits, with a fetch + rebase retry on rejection.

        Raises
        ------
        VersionControlUnavailable
            For protected branches and when retries are exhausted.
        """
        if branch.lower() in PROTECTED_BRANCHES:
            logger.error("SAFETY VIOLATION: Refusing to push to %s", branch)
            raise VersionControlUnavailable(f"Refusing to push to protected branch {branch}")

        for attempt in range(1, self.max_attempts + 1):
            try:
                self._git("push", "origin", branch)
                logger.info("Pushed changes to branch: %s", branch)
                return
            except subprocess.CalledProcessError as e:
                logger.error("Push attempt %d failed: %s", attempt, e.stderr)
                if attempt == self.max_attempts:
                    break
                try:
                    self._git("fetch", "origin", branch)
                    self._git("rebase", f"origin/{branch}")
                except subprocess.CalledProcessError as rebase_err:
                    logger.error("Fetch/rebase failed: %s", rebase_err.stderr)
                    self._git("rebase", "--abort", check=False)
                    break
                time.sleep(self.retry_delay_seconds)

        raise VersionControlUnavailable(f"Push to {branch} failed after {self.max_attempts} attempts")

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=self.workspace_path,
            check=check,
            capture_output=True,
            text=True,
        )
