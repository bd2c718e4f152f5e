import asyncio
import subprocess
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from ci_healer.agents.fix_applier import FixApplier, FixContext, NoFixGenerator
from ci_healer.agents.git_agent import GitAgent
from ci_healer.core.constants import BugType, FixStatus
from ci_healer.core.errors import VersionControlUnavailable
from ci_healer.models.failure import ClassifiedFailure
from ci_healer.utils import escalation_reasons

ORIGINAL = "import os\n\n\ndef add(a, b):\n    return a - b\n"
PATCHED = "import os\n\n\ndef add(a, b):\n    return a + b\n"


def _git(cwd, *args):
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "calc.py").write_text(ORIGINAL, encoding="utf-8")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "initial")
    return tmp_path


@pytest.fixture
def git_agent(repo):
    return GitAgent(str(repo), retry_delay_seconds=0)


def _failure(file="calc.py", line=5, bug_type=BugType.LOGIC, sub_type="failing_test"):
    return ClassifiedFailure(
        bug_type=bug_type, file=file, line_number=line, sub_type=sub_type, message="assert -1 == 3",
    )


def _generator(result=PATCHED):
    generator = MagicMock()
    if isinstance(result, Exception):
        generator.propose = AsyncMock(side_effect=result)
    else:
        generator.propose = AsyncMock(return_value=result)
    return generator


def _commits(repo):
    return int(_git(repo, "rev-list", "--count", "HEAD").strip())


def test_successful_fix_commits_once(git_agent, repo):
    applier = FixApplier(_generator(), git_agent)

    outcome = asyncio.run(applier.apply(_failure()))

    assert outcome.entry.status == FixStatus.FIXED
    assert outcome.entry.commit_message == (
        "[AI-AGENT] LOGIC error in calc.py line 5 "
        "→ Fix: correct the implementation to satisfy the failing test"
    )
    assert outcome.commit_sha
    assert outcome.diff.startswith("--- a/calc.py")
    assert len(outcome.patch_hash) == 16
    assert (repo / "calc.py").read_text(encoding="utf-8") == PATCHED
    assert _commits(repo) == 2
    assert applier.commit_count == 1


def test_generator_receives_context(git_agent):
    generator = _generator()
    applier = FixApplier(generator, git_agent)

    asyncio.run(applier.apply(_failure()))

    bug_type, file, line, context = generator.propose.call_args.args
    assert (bug_type, file, line) == (BugType.LOGIC, "calc.py", 5)
    assert isinstance(context, FixContext)
    assert context.file_content == ORIGINAL
    assert ">>>    5 |     return a - b" in context.snippet
    assert context.message == "assert -1 == 3"
    assert context.sub_type == "failing_test"


def test_repeat_on_fixed_location_is_noop(git_agent, repo):
    generator = _generator()
    applier = FixApplier(generator, git_agent)

    first = asyncio.run(applier.apply(_failure()))
    second = asyncio.run(applier.apply(_failure()))

    assert second.noop
    assert second.entry.status == FixStatus.FIXED
    assert second.entry == first.entry
    assert second.diff == ""
    assert generator.propose.await_count == 1
    assert _commits(repo) == 2


def test_no_fix_available_is_failed(git_agent, repo):
    outcome = asyncio.run(FixApplier(NoFixGenerator(), git_agent).apply(_failure()))

    assert outcome.entry.status == FixStatus.FAILED
    assert outcome.reason == escalation_reasons.NO_FIX_AVAILABLE
    assert _commits(repo) == 1


def test_failed_location_can_be_retried(git_agent):
    generator = MagicMock()
    generator.propose = AsyncMock(side_effect=[None, PATCHED])
    applier = FixApplier(generator, git_agent)

    first = asyncio.run(applier.apply(_failure()))
    second = asyncio.run(applier.apply(_failure()))

    assert first.entry.status == FixStatus.FAILED
    assert second.entry.status == FixStatus.FIXED
    assert not second.noop


def test_generator_exception_is_failed(git_agent):
    outcome = asyncio.run(FixApplier(_generator(RuntimeError("model down")), git_agent).apply(_failure()))

    assert outcome.entry.status == FixStatus.FAILED
    assert outcome.reason == escalation_reasons.GENERATOR_ERROR


def test_identical_patch_is_failed(git_agent, repo):
    outcome = asyncio.run(FixApplier(_generator(ORIGINAL), git_agent).apply(_failure()))

    assert outcome.entry.status == FixStatus.FAILED
    assert outcome.reason == escalation_reasons.NO_CHANGE
    assert _commits(repo) == 1


def test_large_diff_is_failed(git_agent):
    huge = ORIGINAL + "".join(f"x{i} = {i}\n" for i in range(10))
    applier = FixApplier(_generator(huge), git_agent, max_diff_lines=5)

    outcome = asyncio.run(applier.apply(_failure()))

    assert outcome.reason == escalation_reasons.DIFF_TOO_LARGE


def test_missing_file_is_failed(git_agent):
    outcome = asyncio.run(FixApplier(_generator(), git_agent).apply(_failure(file="nope.py")))

    assert outcome.entry.status == FixStatus.FAILED
    assert outcome.reason == escalation_reasons.FILE_UNREADABLE


def test_path_outside_workspace_is_failed(git_agent):
    generator = _generator()
    outcome = asyncio.run(FixApplier(generator, git_agent).apply(_failure(file="../etc/passwd")))

    assert outcome.reason == escalation_reasons.OUT_OF_SCOPE
    generator.propose.assert_not_awaited()


def test_conflict_markers_are_failed(git_agent, repo):
    (repo / "calc.py").write_text("<<<<<<< HEAD\nx = 1\n=======\nx = 2\n>>>>>>> other\n", encoding="utf-8")

    outcome = asyncio.run(FixApplier(_generator(), git_agent).apply(_failure(line=2)))

    assert outcome.reason == escalation_reasons.MERGE_CONFLICT


def test_commit_cap_blocks_further_fixes(git_agent):
    git_agent.commit_count = 20
    outcome = asyncio.run(FixApplier(_generator(), git_agent, max_commits=20).apply(_failure()))

    assert outcome.entry.status == FixStatus.FAILED
    assert outcome.reason == escalation_reasons.COMMIT_CAP


def test_version_control_exhaustion_propagates():
    git_agent = MagicMock()
    git_agent.commit_count = 0
    git_agent.workspace_path = "/tmp/ws"
    git_agent.read_file.return_value = ORIGINAL
    git_agent.commit_changes.side_effect = VersionControlUnavailable("index.lock")

    with pytest.raises(VersionControlUnavailable):
        asyncio.run(FixApplier(_generator(), git_agent).apply(_failure()))


def test_snippet_marks_target_line():
    snippet = FixApplier._extract_snippet("a\nb\nc\nd\ne\nf\ng\nh", 4, context=1)
    assert snippet.splitlines() == [
        "       3 | c",
        ">>>    4 | d",
        "       5 | e",
    ]


def test_diff_size_ignores_headers():
    diff = "--- a/x.py\n+++ b/x.py\n@@ -1 +1 @@\n-a\n+b"
    assert FixApplier._check_diff_size(diff, 2)
    assert not FixApplier._check_diff_size(diff, 1)


def test_git_calls_run_off_the_event_loop_thread(git_agent):
    threads = {}
    read_file, commit_changes = git_agent.read_file, git_agent.commit_changes

    def recording_read(path):
        threads["read"] = threading.get_ident()
        return read_file(path)

    def recording_commit(changes, message):
        threads["commit"] = threading.get_ident()
        return commit_changes(changes, message)

    git_agent.read_file = recording_read
    git_agent.commit_changes = recording_commit

    async def run_test():
        threads["loop"] = threading.get_ident()
        return await FixApplier(_generator(), git_agent).apply(_failure())

    outcome = asyncio.run(run_test())

    assert outcome.entry.status == FixStatus.FIXED
    assert threads["read"] != threads["loop"]
    assert threads["commit"] != threads["loop"]
