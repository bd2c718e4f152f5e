import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests
from docker.errors import DockerException, ImageNotFound

from ci_healer.core.constants import CiStatus
from ci_healer.core.errors import ProbeUnavailable
from ci_healer.executor.build_executor import (
    ExecutionResult,
    SandboxProbe,
    create_log_excerpt,
    run_in_container,
)


@pytest.fixture
def mock_docker():
    with patch("ci_healer.executor.build_executor.docker.from_env") as from_env:
        client = MagicMock()
        from_env.return_value = client
        yield client


def test_run_in_container_success(mock_docker):
    container = MagicMock()
    container.short_id = "abc"
    container.wait.return_value = {"StatusCode": 0}
    container.logs.return_value = b"1 passed"
    mock_docker.containers.run.return_value = container

    result = run_in_container("/tmp/ws", "pytest -q", "python:3.11-slim", 30)

    assert result.exit_code == 0
    assert result.full_log == "1 passed"
    assert result.error is None
    container.remove.assert_called_once_with(force=True)
    kwargs = mock_docker.containers.run.call_args.kwargs
    assert kwargs["volumes"] == {"/tmp/ws": {"bind": "/workspace", "mode": "rw"}}
    assert kwargs["command"] == ["sh", "-c", "pytest -q"]


def test_run_in_container_timeout_removes_container(mock_docker):
    container = MagicMock()
    container.wait.side_effect = requests.exceptions.ReadTimeout("slow")
    mock_docker.containers.run.return_value = container

    result = run_in_container("/tmp/ws", timeout_seconds=1)

    assert result.timed_out
    container.remove.assert_called_once_with(force=True)


def test_run_in_container_missing_image_not_retryable(mock_docker):
    mock_docker.containers.run.side_effect = ImageNotFound("no such image")

    result = run_in_container("/tmp/ws")

    assert result.error
    assert result.retryable is False


def test_run_in_container_daemon_error(mock_docker):
    mock_docker.containers.run.side_effect = DockerException("daemon down")

    result = run_in_container("/tmp/ws")

    assert result.exit_code == -1
    assert "daemon down" in result.error
    assert result.retryable


def test_log_excerpt_short_log_unchanged():
    assert create_log_excerpt("a\nb", head=2, tail=2) == "a\nb"


def test_log_excerpt_omits_middle():
    log = "\n".join(str(i) for i in range(10))
    excerpt = create_log_excerpt(log, head=2, tail=2)
    assert "6 lines omitted" in excerpt
    assert excerpt.startswith("0\n1")
    assert excerpt.endswith("8\n9")


def _trigger(probe, results):
    async def run_test():
        with patch(
            "ci_healer.executor.build_executor.run_in_container", side_effect=results
        ) as mock_run, patch("asyncio.sleep", new_callable=AsyncMock):
            return await probe.trigger("fix", 1), mock_run
    return asyncio.run(run_test())


def test_sandbox_probe_passed():
    probe = SandboxProbe("/tmp/ws")
    result, _ = _trigger(probe, [ExecutionResult(exit_code=0, full_log="ok")])

    assert result.ci_iteration.status == CiStatus.PASSED
    assert result.raw_output == ""


def test_sandbox_probe_failed_carries_log():
    probe = SandboxProbe("/tmp/ws")
    result, _ = _trigger(probe, [ExecutionResult(exit_code=1, full_log="E   AssertionError")])

    assert result.ci_iteration.status == CiStatus.FAILED
    assert "AssertionError" in result.raw_output
    assert not result.timed_out


def test_sandbox_probe_timeout():
    probe = SandboxProbe("/tmp/ws")
    result, _ = _trigger(probe, [ExecutionResult(timed_out=True)])

    assert result.timed_out
    assert result.ci_iteration.status == CiStatus.FAILED


def test_sandbox_probe_retries_then_succeeds():
    probe = SandboxProbe("/tmp/ws", max_attempts=3)
    result, mock_run = _trigger(probe, [
        ExecutionResult(error="Docker error: busy"),
        ExecutionResult(exit_code=0),
    ])

    assert result.ci_iteration.status == CiStatus.PASSED
    assert mock_run.call_count == 2


def test_sandbox_probe_exhaustion_raises():
    probe = SandboxProbe("/tmp/ws", max_attempts=2)
    with pytest.raises(ProbeUnavailable):
        _trigger(probe, [ExecutionResult(error="down"), ExecutionResult(error="down")])


def test_sandbox_probe_missing_image_raises_immediately():
    probe = SandboxProbe("/tmp/ws", max_attempts=3)
    with pytest.raises(ProbeUnavailable):
        _trigger(probe, [ExecutionResult(error="Docker image 'x' not found.", retryable=False)])


def test_sandbox_probe_logs_excerpt_and_duration_on_failure(caplog):
    probe = SandboxProbe("/tmp/ws")
    execution = ExecutionResult(
        exit_code=1, full_log="E   AssertionError", log_excerpt="E   AssertionError", execution_time_seconds=4.2,
    )
    with caplog.at_level(logging.DEBUG, logger="ci_healer.executor.build_executor"):
        _trigger(probe, [execution])

    assert "in 4.20s" in caplog.text
    assert "Sandbox log excerpt:\nE   AssertionError" in caplog.text
