import shutil
import subprocess
import pytest
from unittest.mock import MagicMock, patch
from forge_loop.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ExecutionError,
    PatchApplyError,
    PathOutsideWorkspaceError,
    ToolError,
    UnknownToolError,
    ValidationError,
)
from forge_loop.models import (
    ApplyPatchAction,
    Executed,
    Failed,
    GitAction,
    OpenFileAction,
    PluginAction,
    RunAction,
    WriteFileAction,
)
from forge_loop.tools import (
    PATCH_STRATEGIES,
    ToolContext,
    ToolDispatcher,
    run_command,
    tail,
    validate_branch_name,
    validate_commit_message,
)

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture
def dispatcher(tmp_path):
    return ToolDispatcher(ToolContext(workspace=tmp_path, default_timeout_seconds=10))


@pytest.fixture
def git_repo(tmp_path):
    def git(*argv):
        subprocess.run(["git", *argv], cwd=tmp_path, check=True, capture_output=True)

    git("init", "-q")
    git("config", "user.email", "dev@example.com")
    git("config", "user.name", "Dev")
    (tmp_path / "hello.txt").write_text("one\ntwo\n")
    git("add", "-A")
    git("commit", "-q", "-m", "initial")
    return tmp_path

# ---------------------------------------------------------------------------
# File Tool Tests
# ---------------------------------------------------------------------------

def test_open_file_reads_content(dispatcher, tmp_path):
    (tmp_path / "a.py").write_text("print('hi')\n")
    outcome = dispatcher.execute(OpenFileAction(path="a.py"))

    assert isinstance(outcome, Executed)
    assert outcome.result["content"] == "print('hi')\n"
    assert outcome.result["truncated"] is False

def test_open_file_is_idempotent(dispatcher, tmp_path):
    (tmp_path / "a.py").write_text("x = 1\n")
    first = dispatcher.execute(OpenFileAction(path="a.py"))
    second = dispatcher.execute(OpenFileAction(path="a.py"))
    assert first.result == second.result

def test_open_file_truncates_large_files(tmp_path):
    (tmp_path / "big.txt").write_text("a" * 100)
    dispatcher = ToolDispatcher(ToolContext(workspace=tmp_path, open_file_max_bytes=10))
    outcome = dispatcher.execute(OpenFileAction(path="big.txt"))

    assert outcome.result["content"] == "a" * 10
    assert outcome.result["truncated"] is True

def test_open_file_missing(dispatcher):
    outcome = dispatcher.execute(OpenFileAction(path="nope.txt"))
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "FILE_NOT_FOUND"
    assert "nope.txt" in outcome.error.display_message()

def test_open_file_on_directory(dispatcher, tmp_path):
    (tmp_path / "pkg").mkdir()
    outcome = dispatcher.execute(OpenFileAction(path="pkg"))
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "NOT_A_FILE"

def test_path_traversal_is_blocked(dispatcher, tmp_path):
    (tmp_path.parent / "secret.txt").write_text("nope")
    outcome = dispatcher.execute(OpenFileAction(path="../secret.txt"))

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, PathOutsideWorkspaceError)
    assert outcome.error.code == "PATH_OUTSIDE_WORKSPACE"

def test_write_file_reports_bytes(dispatcher, tmp_path):
    outcome = dispatcher.execute(WriteFileAction(path="notes.txt", content="hello"))

    assert isinstance(outcome, Executed)
    assert outcome.result["bytes"] == 5
    assert (tmp_path / "notes.txt").read_text() == "hello"

def test_write_file_creates_parent_directories(dispatcher, tmp_path):
    dispatcher.execute(WriteFileAction(path="docs/guide/intro.md", content="# Intro\n"))
    assert (tmp_path / "docs" / "guide" / "intro.md").read_text() == "# Intro\n"

def test_write_file_outside_workspace(dispatcher, tmp_path):
    outcome = dispatcher.execute(WriteFileAction(path="../escape.txt", content="x"))
    assert isinstance(outcome, Failed)
    assert not (tmp_path.parent / "escape.txt").exists()

# ---------------------------------------------------------------------------
# Command Tool Tests
# ---------------------------------------------------------------------------

def test_run_success(dispatcher):
    outcome = dispatcher.execute(RunAction(cmd="echo hello"))
    assert isinstance(outcome, Executed)
    assert outcome.result["exit_code"] == 0
    assert outcome.result["stdout"].strip() == "hello"

def test_run_nonzero_exit_is_a_failure(dispatcher):
    outcome = dispatcher.execute(RunAction(cmd="echo oops; exit 3"))

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, CommandFailedError)
    assert outcome.error.exit_code == 3
    assert outcome.error.stdout.strip() == "oops"

def test_run_command_timeout(tmp_path):
    with pytest.raises(CommandTimeoutError) as excinfo:
        run_command(["sleep", "5"], tmp_path, timeout_seconds=0.5)
    assert excinfo.value.code == "COMMAND_TIMEOUT"
    assert excinfo.value.timeout_seconds == 0.5

def test_run_command_keeps_output_tail(tmp_path):
    result = run_command("printf 0123456789abcdef", tmp_path, stdio_limit=6)
    assert result.stdout == "abcdef"
    assert result.truncated is True

def test_run_command_missing_cwd(tmp_path):
    with pytest.raises(ExecutionError) as excinfo:
        run_command(["echo", "hi"], tmp_path / "missing")
    assert excinfo.value.command == "echo hi"

def test_tail():
    assert tail("abcdef", 3) == "def"
    assert tail("abc", 10) == "abc"
    assert tail("abc", None) == "abc"

# ---------------------------------------------------------------------------
# Dispatcher Registry Tests
# ---------------------------------------------------------------------------

def test_unknown_tool_is_a_failure(dispatcher):
    outcome = dispatcher.execute(PluginAction(tool="jira", subtool="create"))
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, UnknownToolError)
    assert "jira.create" in outcome.error.message

def test_handler_for_unknown_git_subtool(dispatcher):
    with pytest.raises(UnknownToolError):
        dispatcher.handler_for(GitAction(subtool="push"))

def test_registered_plugin_handler(dispatcher):
    handler = MagicMock(return_value={"output": "JIRA-1"})
    dispatcher.register("jira.create", handler)

    action = PluginAction(tool="jira", subtool="create", args={"summary": "bug"})
    outcome = dispatcher.execute(action)

    assert isinstance(outcome, Executed)
    assert outcome.result == {"output": "JIRA-1"}
    handler.assert_called_once_with(action, dispatcher.ctx)

def test_oserror_from_plugin_is_classified(dispatcher):
    dispatcher.register("disk.read", MagicMock(side_effect=PermissionError(13, "Permission denied")))
    outcome = dispatcher.execute(PluginAction(tool="disk", subtool="read"))
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "PERMISSION_DENIED"

def test_unexpected_handler_exception_is_a_failure(dispatcher):
    dispatcher.register("lint.run", MagicMock(side_effect=RuntimeError("plugin bug")))
    outcome = dispatcher.execute(PluginAction(tool="lint", subtool="run"))

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ToolError)
    assert outcome.error.code == "TOOL_LINT_RUN_ERROR"
    assert "RuntimeError: plugin bug" in outcome.error.message

def test_null_byte_in_path_is_a_failure(dispatcher):
    outcome = dispatcher.execute(OpenFileAction(path="bad\x00name"))
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "VALIDATION_ERROR"

def test_null_byte_in_command_is_a_failure(dispatcher):
    outcome = dispatcher.execute(RunAction(cmd="echo a\x00b"))
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ExecutionError)

def test_write_file_with_lone_surrogate(dispatcher, tmp_path):
    outcome = dispatcher.execute(WriteFileAction(path="b.txt", content="\ud800"))

    assert isinstance(outcome, Failed)
    assert outcome.error.code == "TOOL_WRITE_FILE_ERROR"
    assert not (tmp_path / "b.txt").exists()

# ---------------------------------------------------------------------------
# Git Validation Tests
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("name", ["feature/x", "fix-123", "release_1.2"])
def test_valid_branch_names(name):
    validate_branch_name(name)

@pytest.mark.parametrize("name", ["", "bad name", "x;rm -rf", "a" * 251, "feat~1"])
def test_invalid_branch_names(name):
    with pytest.raises(ValidationError):
        validate_branch_name(name)

def test_commit_message_rules():
    validate_commit_message("fix: handle empty input\n\nLonger body.")
    with pytest.raises(ValidationError):
        validate_commit_message("tab\there")
    with pytest.raises(ValidationError):
        validate_commit_message("   ")
    with pytest.raises(ValidationError):
        validate_commit_message("x" * 1001)

@patch("forge_loop.tools.run_command")
def test_invalid_branch_never_spawns_git(mock_run, dispatcher):
    outcome = dispatcher.execute(GitAction(subtool="create_branch", args={"name": "bad name"}))
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "VALIDATION_ERROR"
    mock_run.assert_not_called()

@patch("forge_loop.tools.run_command")
def test_patch_without_diff_markers_never_spawns_git(mock_run, dispatcher):
    outcome = dispatcher.execute(ApplyPatchAction(path="a.py", patch="just replace the thing"))
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ValidationError)
    mock_run.assert_not_called()

# ---------------------------------------------------------------------------
# Git Integration Tests
# ---------------------------------------------------------------------------

PATCH = """\
--- a/hello.txt
+++ b/hello.txt
@@ -1,2 +1,2 @@
 one
-two
+three
"""

@needs_git
def test_apply_patch_first_strategy(git_repo):
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    outcome = dispatcher.execute(ApplyPatchAction(path="hello.txt", patch=PATCH))

    assert isinstance(outcome, Executed)
    assert outcome.result["ok"] is True
    assert outcome.result["strategy"] == "git apply " + " ".join(PATCH_STRATEGIES[0]) + " -"
    assert (git_repo / "hello.txt").read_text() == "one\nthree\n"

@needs_git
def test_apply_patch_strips_markdown_fence(git_repo):
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    fenced = "```diff\n" + PATCH + "```"
    outcome = dispatcher.execute(ApplyPatchAction(path="hello.txt", patch=fenced))
    assert isinstance(outcome, Executed)

@needs_git
def test_apply_patch_all_strategies_fail(git_repo):
    (git_repo / "hello.txt").write_text("something\nelse\n")
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    outcome = dispatcher.execute(ApplyPatchAction(path="hello.txt", patch=PATCH))

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, PatchApplyError)
    assert len(outcome.error.attempted) == len(PATCH_STRATEGIES)

@needs_git
def test_git_commit_and_log(git_repo):
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    (git_repo / "new.txt").write_text("new\n")

    commit = dispatcher.execute(GitAction(subtool="commit", args={"message": "add new file"}))
    assert isinstance(commit, Executed)

    log = dispatcher.execute(GitAction(subtool="log", args={"n": 1}))
    assert "add new file" in log.result["output"]

    status = dispatcher.execute(GitAction(subtool="status"))
    assert status.result["output"] == ""

@needs_git
def test_git_create_branch(git_repo):
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    outcome = dispatcher.execute(GitAction(subtool="create_branch", args={"name": "feature/x"}))

    assert isinstance(outcome, Executed)
    head = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=git_repo, capture_output=True, text=True
    )
    assert head.stdout.strip() == "feature/x"

@needs_git
def test_git_commit_with_nothing_staged_fails(git_repo):
    dispatcher = ToolDispatcher(ToolContext(workspace=git_repo))
    outcome = dispatcher.execute(GitAction(subtool="commit", args={"message": "empty"}))
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, CommandFailedError)
