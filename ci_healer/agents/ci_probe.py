"""
CI Probe
========
Triggers a CI run for a branch and waits until it reaches a terminal
PASSED / FAILED status.

Contract:
    trigger(branch, iteration) -> ProbeResult

    - Blocks (suspends) until a terminal status is observed.
    - Per-probe timeout → FAILED ProbeResult with cause TIMEOUT (data, not an
      exception). The controller still charges one retry unit for it.
    - CI unreachable → bounded exponential backoff, then ProbeUnavailable,
      which the controller treats as fatal for the run.

Push-style completion notifications are out of scope: every backend is
expressed as a suspending call from the controller's point of view.
"""
import abc
import asyncio
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from ci_healer.core.config import (
    CI_WORKFLOW_FILE,
    GITHUB_TOKEN,
    PROBE_BACKOFF_CAP_SECONDS,
    PROBE_BACKOFF_SECONDS,
    PROBE_MAX_ATTEMPTS,
    PROBE_TIMEOUT_SECONDS,
)
from ci_healer.core.constants import CiStatus
from ci_healer.core.errors import ProbeUnavailable
from ci_healer.models.probe_result import ProbeCause, ProbeResult
from ci_healer.models.results import CiIteration

logger = logging.getLogger(__name__)

_API_ROOT = "https://api.github.com"
_FAILED_CONCLUSIONS = {"failure", "timed_out", "action_required", "cancelled", "startup_failure"}
_MAX_LOG_CHARS = 200_000
_CLOCK_SKEW_SECONDS = 5


class CIProbe(abc.ABC):
    """A CI backend the iteration controller can trigger and wait on."""

    @abc.abstractmethod
    async def trigger(self, branch: str, iteration: int) -> ProbeResult:
        """Start or re-run CI for ``branch`` and wait for a terminal status."""

    @staticmethod
    def _result(
        iteration: int,
        status: CiStatus,
        started_at: datetime,
        raw_output: str = "",
        run_id: str = "",
        cause: ProbeCause = ProbeCause.COMPLETED,
    ) -> ProbeResult:
        return ProbeResult(
            ci_iteration=CiIteration(iteration=iteration, status=status, timestamp=started_at),
            raw_output=raw_output,
            run_id=run_id,
            cause=cause,
        )


class GitHubActionsProbe(CIProbe):
    """
    Probe backed by the GitHub Actions REST API.

    Flow per trigger:
        1. Resolve the branch head SHA
        2. Dispatch the configured workflow (if any), else rely on the push
        3. Poll workflow runs for that SHA with exponential backoff
        4. On a failed conclusion, collect the failed jobs' logs
    """

    def __init__(
        self,
        repo_url: str,
        github_token: str = GITHUB_TOKEN,
        workflow_file: str = CI_WORKFLOW_FILE,
        timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
        max_attempts: int = PROBE_MAX_ATTEMPTS,
        backoff_seconds: float = PROBE_BACKOFF_SECONDS,
        backoff_cap_seconds: float = PROBE_BACKOFF_CAP_SECONDS,
    ) -> None:
        self.repo_path = self._extract_repo_path(repo_url)
        if not self.repo_path:
            raise ValueError(f"Could not extract owner/repo from {repo_url}")
        self.workflow_file = workflow_file
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "CI-Healing-Agent",
        }
        if github_token:
            self.headers["Authorization"] = f"token {github_token}"

    @staticmethod
    def _extract_repo_path(repo_url: str) -> str:
        """Extract 'owner/repo' from GitHub URL."""
        match = re.search(r"github\.com[:/](.+?)(?:\.git)?/?$", repo_url)
        if match:
            return match.group(1).rstrip("/")
        return ""

    # -------------------------------------------------------------------
    # Transport with bounded retry
    # -------------------------------------------------------------------
    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send one request, retrying transient failures.

        5xx and transport errors back off exponentially up to max_attempts;
        4xx is a configuration problem and fails immediately. Both surface
        as ProbeUnavailable.
        """
        delay = self.backoff_seconds
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as http_err:
                status_code = http_err.response.status_code
                if 400 <= status_code < 500:
                    logger.error("CI request rejected — HTTP %d: %s", status_code, url)
                    raise ProbeUnavailable(f"CI rejected request ({status_code}): {url}") from http_err
                logger.warning(
                    "CI server error (HTTP %d), attempt %d/%d", status_code, attempt, self.max_attempts
                )
                last_error = http_err
            except httpx.TransportError as exc:
                logger.warning("CI unreachable (%s), attempt %d/%d", exc, attempt, self.max_attempts)
                last_error = exc

            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.backoff_cap_seconds)

        raise ProbeUnavailable(
            f"CI unreachable after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def trigger(self, branch: str, iteration: int) -> ProbeResult:
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        async with httpx.AsyncClient(
            base_url=_API_ROOT, headers=self.headers, timeout=20.0, follow_redirects=True
        ) as client:
            head_sha = await self._head_sha(client, branch)
            if self.workflow_file:
                await self._dispatch(client, branch)

            # A dispatched run must be newer than this trigger. Without a workflow file,
            # runs are matched on the SHA and a stale failed one is re-run.
            not_before = started_at - timedelta(seconds=_CLOCK_SKEW_SECONDS)
            if self.workflow_file:
                run = await self._wait_for_run(client, head_sha, start, not_before)
            else:
                run = await self._wait_for_run(client, head_sha, start, rerun_before=not_before)
            if run is None:
                logger.warning(
                    "CI probe timed out after %.0fs (branch=%s, iteration=%d)",
                    self.timeout_seconds, branch, iteration,
                )
                return self._result(iteration, CiStatus.FAILED, started_at, cause=ProbeCause.TIMEOUT)

            run_id = str(run.get("id", ""))
            if run.get("conclusion") not in _FAILED_CONCLUSIONS:
                logger.info("CI run %s PASSED (iteration %d)", run_id, iteration)
                return self._result(iteration, CiStatus.PASSED, started_at, run_id=run_id)

            raw_output = await self._collect_failure_output(client, run_id)
            logger.info(
                "CI run %s FAILED (iteration %d, %d chars of output)", run_id, iteration, len(raw_output)
            )
            return self._result(iteration, CiStatus.FAILED, started_at, raw_output=raw_output, run_id=run_id)

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------
    async def _head_sha(self, client: httpx.AsyncClient, branch: str) -> str:
        response = await self._request(client, "GET", f"/repos/{self.repo_path}/branches/{branch}")
        try:
            return response.json()["commit"]["sha"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProbeUnavailable(f"Malformed branch response for {branch}") from exc

    async def _dispatch(self, client: httpx.AsyncClient, branch: str) -> None:
        url = f"/repos/{self.repo_path}/actions/workflows/{self.workflow_file}/dispatches"
        await self._request(client, "POST", url, json={"ref": branch})
        logger.info("Dispatched workflow %s on %s", self.workflow_file, branch)

    async def _rerun_failed_jobs(self, client: httpx.AsyncClient, run_id: str) -> None:
        url = f"/repos/{self.repo_path}/actions/runs/{run_id}/rerun-failed-jobs"
        await self._request(client, "POST", url)
        logger.info("Re-running failed jobs of CI run %s", run_id)

    async def _wait_for_run(
        self,
        client: httpx.AsyncClient,
        head_sha: str,
        start: float,
        not_before: Optional[datetime] = None,
        rerun_before: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Poll until every run for head_sha completed. None on timeout.

        Runs that started before not_before are ignored. With rerun_before set,
        a completed failed run that started before it is re-run once and only
        runs started after rerun_before count from then on.
        """
        url = f"/repos/{self.repo_path}/actions/runs"
        backoff = self.backoff_seconds
        last_status = ""

        while (time.monotonic() - start) < self.timeout_seconds:
            response = await self._request(client, "GET", url, params={"head_sha": head_sha})
            runs: List[Dict[str, Any]] = response.json().get("workflow_runs", [])
            if not_before is not None:
                runs = [r for r in runs if _run_started(r) >= not_before]

            if runs and all(r.get("status") == "completed" for r in runs):
                failed = [r for r in runs if r.get("conclusion") in _FAILED_CONCLUSIONS]
                stale = rerun_before is not None and all(_run_started(r) < rerun_before for r in runs)
                if not (failed and stale):
                    return failed[0] if failed else runs[0]
                await self._rerun_failed_jobs(client, str(failed[0].get("id", "")))
                not_before, rerun_before = rerun_before, None
                runs = []

            current_status = "in_progress" if runs else "queued"
            if current_status != last_status:
                logger.info("CI status update: %s", current_status)
                last_status = current_status
                multiplier = 1.5
            else:
                multiplier = 2.0

            await asyncio.sleep(backoff)
            backoff = min(backoff * multiplier, self.backoff_cap_seconds)

        return None

    async def _collect_failure_output(self, client: httpx.AsyncClient, run_id: str) -> str:
        """Concatenate the logs of every failed job in the run."""
        response = await self._request(client, "GET", f"/repos/{self.repo_path}/actions/runs/{run_id}/jobs")
        jobs = response.json().get("jobs", [])
        failed_jobs = [j for j in jobs if j.get("conclusion") in _FAILED_CONCLUSIONS]

        parts: List[str] = []
        for job in failed_jobs:
            log_response = await self._request(
                client, "GET", f"/repos/{self.repo_path}/actions/jobs/{job['id']}/logs"
            )
            parts.append(f">>> JOB: {job.get('name', job['id'])}\n{log_response.text}")

        output = "\n".join(parts)
        return output[-_MAX_LOG_CHARS:]


def _run_started(run: Dict[str, Any]) -> datetime:
    """A re-run keeps its id and created_at but gets a fresh run_started_at."""
    return _parse_ts(run.get("run_started_at") or run.get("created_at"))


def _parse_ts(value: Optional[str]) -> datetime:
    """Parse a GitHub ISO timestamp ("2024-01-01T00:00:00Z")."""
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
