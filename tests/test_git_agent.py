import subprocess
from unittest.mock import patch

import pytest

from ci_healer.agents.git_agent import GitAgent
from ci_healer.core.errors import VersionControlUnavailable


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "app.py").write_text("import os\nprint('hi')\n", encoding="utf-8")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "initial")
    return tmp_path


@pytest.fixture
def agent(repo):
    return GitAgent(str(repo), max_attempts=2, retry_delay_seconds=0)


def test_branch_name_generation():
    assert GitAgent.generate_branch_name("My Team", "AI Agent") == "MY_TEAM_AI_AGENT_AI_Fix"


def test_branch_name_special_chars():
    assert GitAgent.generate_branch_name("Team! @#$", "Agent 123") == "TEAM_AGENT_123_AI_Fix"


def test_branch_name_strips_accents():
    assert GitAgent.generate_branch_name("Équipe", "José") == "EQUIPE_JOSE_AI_Fix"


def test_branch_name_validation():
    assert GitAgent.validate_branch_name("TEAM_NAME_AI_Fix") is True
    assert GitAgent.validate_branch_name("invalid") is False
    assert GitAgent.validate_branch_name("team_ai_fix") is False


def test_checkout_creates_branch(agent):
    assert not agent.branch_exists("TEAM_AI_Fix")
    agent.checkout_branch("TEAM_AI_Fix")
    assert agent.branch_exists("TEAM_AI_Fix")


def test_commit_changes_creates_one_commit(agent, repo):
    sha = agent.commit_changes({"app.py": "print('hi')\n"}, "[AI-AGENT] LINTING error in app.py line 1")

    assert sha == agent.get_last_commit_sha()
    assert agent.commit_count == 1
    assert (repo / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    log = subprocess.run(
        ["git", "log", "-1", "--format=%s"], cwd=repo, capture_output=True, text=True, check=True,
    ).stdout.strip()
    assert log == "[AI-AGENT] LINTING error in app.py line 1"


def test_commit_changes_without_difference_makes_no_commit(agent):
    sha = agent.commit_changes({"app.py": "import os\nprint('hi')\n"}, "noop")
    assert sha == ""
    assert agent.commit_count == 0


def test_commit_retries_then_raises(agent):
    error = subprocess.CalledProcessError(1, ["git", "add"], stderr="index.lock exists")
    with patch.object(GitAgent, "_git", side_effect=error):
        with pytest.raises(VersionControlUnavailable):
            agent.commit_changes({"app.py": "x = 1\n"}, "msg")
    assert agent.commit_count == 0


def test_resolve_rejects_escape(agent):
    with pytest.raises(ValueError):
        agent.resolve("../outside.py")


def test_read_file(agent):
    assert agent.read_file("app.py").startswith("import os")


@patch("subprocess.run")
def test_push_refuses_main(mock_run, agent):
    with pytest.raises(VersionControlUnavailable):
        agent.push("main")
    assert mock_run.call_count == 0


@patch("subprocess.run")
def test_push_retry_on_rejection(mock_run, agent):
    mock_run.side_effect = [
        subprocess.CalledProcessError(1, "git push", stderr="rejected"),
        subprocess.CompletedProcess([], 0),  # fetch
        subprocess.CompletedProcess([], 0),  # rebase
        subprocess.CompletedProcess([], 0),  # push
    ]
    agent.push("TEAM_AI_Fix")
    assert mock_run.call_count == 4


def _always_rejected(args, check=False, **kwargs):
    if check:
        raise subprocess.CalledProcessError(1, args, stderr="rejected")
    return subprocess.CompletedProcess(args, 1)


@patch("subprocess.run", side_effect=_always_rejected)
def test_push_exhaustion_raises(mock_run, agent):
    with pytest.raises(VersionControlUnavailable):
        agent.push("TEAM_AI_Fix")
