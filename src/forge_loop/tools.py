# tools.py
# Tool registry: all side-effecting implementations.
# The harness only talks to ToolDispatcher and never calls these directly.

import re
import subprocess
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel

from forge_loop.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ExecutionError,
    ForgeError,
    PatchApplyError,
    PathOutsideWorkspaceError,
    ToolError,
    UnknownToolError,
    ValidationError,
    from_os_error,
)
from forge_loop.models import (
    Action,
    ApplyPatchAction,
    Executed,
    Failed,
    GitAction,
    OpenFileAction,
    RunAction,
    WriteFileAction,
    action_key,
)


class ToolContext(BaseModel):
    """Per-session handler settings. Paths resolve against `workspace`."""

    workspace: Path
    default_timeout_seconds: float = 120
    stdio_limit: int = 200_000
    open_file_max_bytes: int = 200_000


Handler = Callable[[Any, ToolContext], dict]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve(tool: str, path: str, ctx: ToolContext) -> Path:
    root = ctx.workspace.resolve()
    try:
        target = (root / path).resolve()
    except ValueError as exc:
        raise ValidationError(f"Invalid path: {exc}", field="path", path=path) from exc
    if target != root and root not in target.parents:
        raise PathOutsideWorkspaceError(tool, path, str(root))
    return target


def tail(text: str, limit: int | None) -> str:
    """Keep the last `limit` characters. The end of a log is where the error is."""
    if not limit or len(text) <= limit:
        return text
    return text[len(text) - limit:]


class CommandResult(BaseModel):
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False


def run_command(
    cmd: str | list[str],
    cwd: Path,
    timeout_seconds: float | None = None,
    stdio_limit: int | None = None,
    stdin: str | None = None,
) -> CommandResult:
    """
    Spawn a subprocess and wait for it.

    A string runs through the shell, a list does not. Output beyond
    `stdio_limit` characters keeps its tail. Raises CommandTimeoutError on
    timeout; a non-zero exit is returned, not raised. A KeyboardInterrupt kills
    the child before propagating.
    """
    label = cmd if isinstance(cmd, str) else " ".join(cmd)
    logger.debug(f"[RUN] $ {label} (cwd={cwd}, timeout={timeout_seconds})")

    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            shell=isinstance(cmd, str),
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except (OSError, ValueError) as exc:
        raise ExecutionError(f"Could not start command: {exc}", command=label) from exc

    try:
        stdout, stderr = proc.communicate(input=stdin, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
        raise CommandTimeoutError(
            label,
            timeout_seconds,
            stdout=tail(stdout or "", stdio_limit),
            stderr=tail(stderr or "", stdio_limit),
        )
    except KeyboardInterrupt:
        proc.kill()
        proc.wait()
        raise

    truncated = bool(stdio_limit) and (len(stdout) > stdio_limit or len(stderr) > stdio_limit)
    return CommandResult(
        command=label,
        exit_code=proc.returncode,
        stdout=tail(stdout, stdio_limit),
        stderr=tail(stderr, stdio_limit),
        truncated=truncated,
    )


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _tool_open_file(action: OpenFileAction, ctx: ToolContext) -> dict:
    target = _resolve("open_file", action.path, ctx)
    try:
        with open(target, "rb") as fh:
            raw = fh.read(ctx.open_file_max_bytes + 1)
    except OSError as exc:
        raise from_os_error("open_file", exc, path=action.path) from exc

    truncated = len(raw) > ctx.open_file_max_bytes
    if truncated:
        raw = raw[: ctx.open_file_max_bytes]
    return {
        "path": str(target),
        "content": raw.decode("utf-8", errors="replace"),
        "truncated": truncated,
    }


def _tool_write_file(action: WriteFileAction, ctx: ToolContext) -> dict:
    target = _resolve("write_file", action.path, ctx)
    try:
        data = action.content.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ToolError("write_file", f"Content is not encodable as UTF-8: {exc.reason}", path=action.path) from exc
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    except OSError as exc:
        raise from_os_error("write_file", exc, path=action.path) from exc
    return {"path": str(target), "bytes": len(data)}


# ---------------------------------------------------------------------------
# Patch tool
# ---------------------------------------------------------------------------

# Most to least strict. git refuses --reject together with --3way, so reject
# markers only come with the last strategy.
PATCH_STRATEGIES: list[list[str]] = [
    ["-3", "--index", "--whitespace=nowarn"],
    ["-3", "--whitespace=nowarn"],
    ["--reject", "--whitespace=nowarn"],
]


def _strip_fences(patch: str) -> str:
    cleaned = patch.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned if cleaned.endswith("\n") else cleaned + "\n"


def _tool_apply_patch(action: ApplyPatchAction, ctx: ToolContext) -> dict:
    _resolve("apply_patch", action.path, ctx)
    patch = _strip_fences(action.patch)
    if not any(line.startswith(("---", "diff ", "@@")) for line in patch.split("\n")):
        raise ValidationError("Not a unified diff (missing ---, diff or @@ markers).", field="patch", path=action.path)

    attempted: list[str] = []
    last_error = ""
    for args in PATCH_STRATEGIES:
        argv = ["git", "apply", *args, "-"]
        attempted.append(" ".join(argv))
        result = run_command(argv, ctx.workspace, ctx.default_timeout_seconds, ctx.stdio_limit, stdin=patch)
        if result.exit_code == 0:
            logger.info(f"[PATCH] Applied to {action.path} with: {attempted[-1]}")
            return {
                "ok": True,
                "path": action.path,
                "strategy": attempted[-1],
                "attempted": attempted,
                "stdout": result.stdout,
                "stderr": result.stderr,
            }
        last_error = (result.stderr or result.stdout).strip()
        logger.warning(f"[PATCH] {attempted[-1]} failed: {last_error}")

    raise PatchApplyError(action.path, attempted, stderr=last_error)


# ---------------------------------------------------------------------------
# Command tool
# ---------------------------------------------------------------------------


def _tool_run(action: RunAction, ctx: ToolContext) -> dict:
    timeout = action.timeout_seconds or ctx.default_timeout_seconds
    result = run_command(action.cmd, ctx.workspace, timeout, ctx.stdio_limit)
    if result.exit_code != 0:
        raise CommandFailedError(action.cmd, result.exit_code, stdout=result.stdout, stderr=result.stderr)
    return result.model_dump()


# ---------------------------------------------------------------------------
# Git tools
# ---------------------------------------------------------------------------

BRANCH_NAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
# Printable ASCII plus CR/LF. No tabs or other control characters.
COMMIT_MESSAGE_RE = re.compile(r"^[\x20-\x7E\r\n]+$")


def validate_branch_name(name: str) -> None:
    if not name or len(name) > 250:
        raise ValidationError("must be 1-250 characters long", field="branch_name")
    if not BRANCH_NAME_RE.match(name):
        raise ValidationError(
            "must contain only alphanumerics, dots, underscores, slashes and hyphens",
            field="branch_name",
        )


def validate_commit_message(message: str) -> None:
    if not message.strip() or len(message) > 1000:
        raise ValidationError("must be 1-1000 characters long", field="commit_message")
    if not COMMIT_MESSAGE_RE.match(message):
        raise ValidationError("must not contain control characters", field="commit_message")


def _git(argv: list[str], ctx: ToolContext) -> CommandResult:
    result = run_command(["git", *argv], ctx.workspace, ctx.default_timeout_seconds, ctx.stdio_limit)
    if result.exit_code != 0:
        raise CommandFailedError(result.command, result.exit_code, stdout=result.stdout, stderr=result.stderr)
    return result


def _output(result: CommandResult) -> str:
    return (result.stdout or result.stderr).strip()


def _git_commit(action: GitAction, ctx: ToolContext) -> dict:
    message = str(action.args.get("message", "")).strip()
    validate_commit_message(message)
    _git(["add", "-A"], ctx)
    return {"ok": True, "output": _output(_git(["commit", "-m", message], ctx))}


def _git_create_branch(action: GitAction, ctx: ToolContext) -> dict:
    name = str(action.args.get("name", "")).strip()
    validate_branch_name(name)
    return {"ok": True, "branch": name, "output": _output(_git(["switch", "-c", name], ctx))}


def _git_status(action: GitAction, ctx: ToolContext) -> dict:
    return {"ok": True, "output": _git(["status", "--porcelain=v1"], ctx).stdout.strip()}


def _git_diff(action: GitAction, ctx: ToolContext) -> dict:
    argv = ["diff", "--cached", "--stat"] if action.args.get("staged") else ["diff", "--stat"]
    return {"ok": True, "output": _git(argv, ctx).stdout.strip()}


def _git_log(action: GitAction, ctx: ToolContext) -> dict:
    try:
        count = max(1, min(int(action.args.get("n", 10)), 100))
    except (TypeError, ValueError) as exc:
        raise ValidationError("must be an integer", field="n") from exc
    argv = ["log", "--date=short", f"-n{count}", "--pretty=format:%h%x09%ad%x09%an%x09%s"]
    return {"ok": True, "output": _git(argv, ctx).stdout.strip()}


TOOLS: dict[str, Handler] = {
    "open_file":         _tool_open_file,
    "write_file":        _tool_write_file,
    "apply_patch":       _tool_apply_patch,
    "run":               _tool_run,
    "git.commit":        _git_commit,
    "git.create_branch": _git_create_branch,
    "git.status":        _git_status,
    "git.diff":          _git_diff,
    "git.log":           _git_log,
}


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """
    Maps an action to exactly one handler by tag (plus subtool).

    Lookup is a plain dict access: an unregistered key raises
    UnknownToolError, never a silent no-op. Plugins register extra handlers
    under `tool.subtool` keys with the same (action, ctx) -> dict contract.
    """

    def __init__(self, ctx: ToolContext, handlers: dict[str, Handler] | None = None) -> None:
        self.ctx = ctx
        self._handlers: dict[str, Handler] = dict(TOOLS if handlers is None else handlers)

    def register(self, key: str, handler: Handler) -> None:
        self._handlers[key] = handler

    def handler_for(self, action: Action) -> Handler:
        key = action_key(action)
        if key not in self._handlers:
            raise UnknownToolError(key)
        return self._handlers[key]

    def dispatch(self, action: Action) -> dict:
        """Run the handler. Raises ForgeError subclasses on failure."""
        handler = self.handler_for(action)
        logger.info(f"[DISPATCH] {action_key(action)}")
        try:
            return handler(action, self.ctx)
        except OSError as exc:
            raise from_os_error(action_key(action), exc) from exc

    def execute(self, action: Action) -> Executed | Failed:
        """
        dispatch() folded into the explicit Executed / Failed outcome.

        Any handler exception becomes a Failed outcome so later actions in
        the same pass still run. KeyboardInterrupt propagates.
        """
        try:
            result = self.dispatch(action)
        except ForgeError as exc:
            logger.warning(f"[DISPATCH] {action_key(action)} failed: {exc.display_message()}")
            return Failed(action=action, error=exc)
        except Exception as exc:
            logger.exception(f"[DISPATCH] {action_key(action)} raised {type(exc).__name__}")
            error = ToolError(action_key(action), f"{type(exc).__name__}: {exc}")
            return Failed(action=action, error=error)
        return Executed(action=action, result=result)
