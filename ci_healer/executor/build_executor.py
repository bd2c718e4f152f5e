"""
Build Executor
==============
Runs the CI command inside an ephemeral Docker sandbox container and exposes
it as a CI probe, for repositories whose CI cannot be driven remotely.

BOUNDARY RULES:
    - Executor ONLY observes execution.
    - Executor NEVER fixes code, classifies bugs or commits changes.

DOCKER STRATEGY:
    - One container per trigger (ephemeral).
    - Workspace mounted as volume at /workspace.
    - Container destroyed after execution.

DETERMINISM:
    Same workspace + same command → same executor output.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import docker
import requests
from docker.errors import DockerException, ImageNotFound

from ci_healer.agents.ci_probe import CIProbe
from ci_healer.core.config import (
    CI_COMMAND,
    DOCKER_IMAGE,
    PROBE_BACKOFF_CAP_SECONDS,
    PROBE_BACKOFF_SECONDS,
    PROBE_MAX_ATTEMPTS,
    PROBE_TIMEOUT_SECONDS,
)
from ci_healer.core.constants import CiStatus
from ci_healer.core.errors import ProbeUnavailable
from ci_healer.models.probe_result import ProbeCause, ProbeResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution Result
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single sandbox execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = not run).
    full_log : str
        Full combined stdout + stderr from the container.
    log_excerpt : str
        Abbreviated log (first + last N lines) for log messages.
    execution_time_seconds : float
        Wall clock duration of the execution.
    timed_out : bool
        True if the container exceeded the timeout and was killed.
    error : str | None
        Infrastructure failure message (not build errors).
    retryable : bool
        False for configuration errors that no retry can fix.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    timed_out: bool = False
    error: Optional[str] = None
    retryable: bool = True


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.
    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


# ---------------------------------------------------------------------------
# Container Execution
# ---------------------------------------------------------------------------
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2


def run_in_container(
    workspace_path: str,
    command: str = CI_COMMAND,
    docker_image: str = DOCKER_IMAGE,
    timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
) -> ExecutionResult:
    """
    Execute the CI command inside an ephemeral Docker container.

    Returns
    -------
    ExecutionResult
        Always returned — never raises. On infrastructure failure,
        exit_code is -1 and error is set.
    """
    result = ExecutionResult()
    start_time = time.monotonic()
    container = None

    try:
        client = docker.from_env()
        logger.info(
            "Starting container | image=%s | timeout=%ds | command=%s",
            docker_image, timeout_seconds, command,
        )
        container = client.containers.run(
            image=docker_image,
            command=["sh", "-c", command],
            volumes={workspace_path: {"bind": "/workspace", "mode": "rw"}},
            environment={"CI": "true"},
            working_dir="/workspace",
            mem_limit=_MEMORY_LIMIT,
            nano_cpus=_CPU_COUNT * 1_000_000_000,
            labels={"project": "ci-healer", "role": "sandbox"},
            detach=True,
        )

        wait_result = container.wait(timeout=timeout_seconds)
        result.exit_code = wait_result.get("StatusCode", -1)
        result.full_log = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")

    except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError) as e:
        if container is not None:
            result.timed_out = True
            logger.warning("Container exceeded %ss timeout: %s", timeout_seconds, e)
        else:
            result.error = f"Docker daemon unreachable: {e}"
            logger.error(result.error)

    except ImageNotFound:
        result.error = f"Docker image '{docker_image}' not found."
        result.retryable = False
        logger.error(result.error)

    except DockerException as e:
        result.error = f"Docker error: {e}"
        logger.error(result.error)

    finally:
        if container is not None:
            try:
                container.remove(force=True)
                logger.info("Container %s destroyed", container.short_id)
            except DockerException:
                logger.warning("Failed to remove container", exc_info=True)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    result.log_excerpt = create_log_excerpt(result.full_log)

    logger.info(
        "Execution complete | exit=%d | time=%.2fs | timed_out=%s",
        result.exit_code, result.execution_time_seconds, result.timed_out,
    )
    return result


# ---------------------------------------------------------------------------
# Sandbox Probe
# ---------------------------------------------------------------------------
class SandboxProbe(CIProbe):
    """
    CI probe that runs the CI command locally in a Docker sandbox against
    the healing workspace. Exit code 0 is PASSED.
    """

    def __init__(
        self,
        workspace_path: str,
        command: str = CI_COMMAND,
        docker_image: str = DOCKER_IMAGE,
        timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
        max_attempts: int = PROBE_MAX_ATTEMPTS,
        backoff_seconds: float = PROBE_BACKOFF_SECONDS,
        backoff_cap_seconds: float = PROBE_BACKOFF_CAP_SECONDS,
    ) -> None:
        self.workspace_path = workspace_path
        self.command = command
        self.docker_image = docker_image
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_cap_seconds = backoff_cap_seconds

    async def trigger(self, branch: str, iteration: int) -> ProbeResult:
        started_at = datetime.now(timezone.utc)
        delay = self.backoff_seconds

        for attempt in range(1, self.max_attempts + 1):
            execution = await asyncio.to_thread(
                run_in_container,
                self.workspace_path,
                self.command,
                self.docker_image,
                self.timeout_seconds,
            )

            if execution.timed_out:
                return self._result(
                    iteration, CiStatus.FAILED, started_at,
                    raw_output=execution.full_log, cause=ProbeCause.TIMEOUT,
                )

            if execution.error is None:
                status = CiStatus.PASSED if execution.exit_code == 0 else CiStatus.FAILED
                logger.info(
                    "Sandbox run on %s: %s in %.2fs (iteration %d)",
                    branch, status.value, execution.execution_time_seconds, iteration,
                )
                if status == CiStatus.FAILED:
                    logger.debug("Sandbox log excerpt:\n%s", execution.log_excerpt)
                return self._result(
                    iteration, status, started_at,
                    raw_output="" if status == CiStatus.PASSED else execution.full_log,
                )

            if not execution.retryable:
                raise ProbeUnavailable(execution.error)

            logger.warning("Sandbox unavailable, attempt %d/%d", attempt, self.max_attempts)
            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.backoff_cap_seconds)

        raise ProbeUnavailable(f"Sandbox unavailable after {self.max_attempts} attempts")
