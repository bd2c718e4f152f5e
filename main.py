"""CLI entry point for the CI healing agent."""

import asyncio
import functools
import importlib
import json
import logging
import signal
import subprocess
from typing import Optional

import typer

from ci_healer.agents.ci_probe import CIProbe, GitHubActionsProbe
from ci_healer.agents.fix_applier import FixApplier, FixGenerator, NoFixGenerator
from ci_healer.agents.git_agent import GitAgent
from ci_healer.agents.iteration_controller import IterationController
from ci_healer.core.config import (
    GITHUB_TOKEN,
    LEADER_NAME,
    RESULTS_PATH,
    RUN_DEADLINE_SECONDS,
    RUN_RETRY_LIMIT,
    TEAM_NAME,
)
from ci_healer.core.errors import HealerError, RunAborted, VersionControlUnavailable
from ci_healer.executor.build_executor import SandboxProbe
from ci_healer.models.results import AgentResults
from ci_healer.parser.failure_parser import classify_failures
from ci_healer.services.repo_service import clone_repository, detect_project_type
from ci_healer.services.run_reporter import RunReporter
from ci_healer.utils.logging_config import setup_logging

logger = logging.getLogger("main")

EXIT_ABORTED = 2

app = typer.Typer(help="Autonomous CI healing agent.")


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: bool = typer.Option(True, help="Also write a daily log file under logs/"),
) -> None:
    """Configure logging for every command."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, log_dir="logs" if log_file else None)


def load_fix_generator(import_path: Optional[str]) -> FixGenerator:
    """
    Resolve a ``module:attr`` import path to a fix generator.

    A class is instantiated without arguments; anything else is used as is.
    """
    if not import_path:
        logger.warning("No fix generator configured, every fix attempt will be FAILED")
        return NoFixGenerator()

    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Fix generator must look like 'module:attr', got {import_path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    generator = target() if isinstance(target, type) else target
    if not callable(getattr(generator, "propose", None)):
        raise ValueError(f"{import_path} has no propose() method")
    return generator


def _create_probe(kind: str, repo_url: str, workspace: str) -> CIProbe:
    kind = kind.lower()
    if kind == "github":
        return GitHubActionsProbe(repo_url, github_token=GITHUB_TOKEN)
    if kind == "sandbox":
        return SandboxProbe(workspace)
    raise ValueError(f"Unknown probe type: {kind}. Must be one of: github, sandbox")


async def _run(controller: IterationController, repo_url: str, team: str, leader: str, branch: str) -> AgentResults:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal handler for %s not supported here", sig)
    return await controller.run(repo_url, team, leader, branch)


@app.command()
def heal(
    repo_url: str = typer.Option(..., help="Repository URL"),
    team: str = typer.Option(TEAM_NAME, help="Team name"),
    leader: str = typer.Option(LEADER_NAME, help="Team leader name"),
    workspace: Optional[str] = typer.Option(None, help="Existing local checkout (cloned when omitted)"),
    retry_limit: int = typer.Option(RUN_RETRY_LIMIT, min=1, help="Maximum number of CI triggers"),
    deadline: float = typer.Option(RUN_DEADLINE_SECONDS, min=0, help="Overall run deadline in seconds, 0 for none"),
    probe: str = typer.Option("github", help="CI probe (github, sandbox)"),
    fix_generator: Optional[str] = typer.Option(None, help="Fix generator import path, module:attr"),
    push: Optional[bool] = typer.Option(None, help="Push fix commits before re-probing (default: on for github)"),
    output: str = typer.Option(RESULTS_PATH, help="Where to write results.json"),
) -> None:
    """Heal a failing CI pipeline and write the scored results."""
    try:
        generator = load_fix_generator(fix_generator)
        workspace_path = workspace or clone_repository(repo_url, GITHUB_TOKEN)
        ci_probe = _create_probe(probe, repo_url, workspace_path)
    except (ValueError, ImportError, AttributeError, RuntimeError) as e:
        logger.error("Setup failed: %s", e)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    git_agent = GitAgent(workspace_path)
    branch = GitAgent.generate_branch_name(team, leader)
    if not GitAgent.validate_branch_name(branch):
        typer.echo(f"Error: team and leader names give an invalid branch name: {branch}", err=True)
        raise typer.Exit(code=1)
    should_push = push if push is not None else probe.lower() == "github"

    controller = IterationController(
        probe=ci_probe,
        fix_applier=FixApplier(generator, git_agent),
        reporter=RunReporter(),
        classifier=functools.partial(
            classify_failures,
            workspace_path=workspace_path,
            project_type=detect_project_type(workspace_path),
        ),
        git_agent=git_agent if should_push else None,
        retry_limit=retry_limit,
        run_deadline_seconds=deadline,
    )

    try:
        git_agent.checkout_branch(branch)
        if should_push:
            git_agent.push(branch)
        results = asyncio.run(_run(controller, repo_url, team, leader, branch))
    except RunAborted as e:
        typer.echo(f"Run aborted: {e.reason}", err=True)
        raise typer.Exit(code=EXIT_ABORTED)
    except VersionControlUnavailable as e:
        logger.error("Could not publish branch %s: %s", branch, e)
        typer.echo(f"Run aborted: {e}", err=True)
        raise typer.Exit(code=EXIT_ABORTED)
    except subprocess.CalledProcessError as e:
        logger.error("git %s failed: %s", " ".join(e.cmd[1:]), (e.stderr or "").strip())
        typer.echo(f"Error: could not prepare branch {branch}", err=True)
        raise typer.Exit(code=1)
    except HealerError as e:
        logger.exception("Heal run failed")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    path = RunReporter.write_results(results, output)
    typer.echo(json.dumps({
        "finalCiStatus": results.final_ci_status.value,
        "iterations": len(results.ci_timeline),
        "totalFixesApplied": results.total_fixes_applied,
        "finalScore": results.final_score,
        "results": path,
    }, indent=2))


if __name__ == "__main__":  # pragma: no cover
    app()
