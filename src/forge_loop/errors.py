# errors.py
# Exception taxonomy for the turn orchestrator.
#
# Every error carries a short machine code and a context dict (command, exit
# code, path, ...). Tool and verification failures are folded into
# observations by the harness; nothing here terminates the process.

from typing import Any


class ForgeError(Exception):
    """Base class. `code` classifies, `context` carries the details."""

    code = "FORGE_ERROR"

    def __init__(self, message: str, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def display_message(self) -> str:
        """Short classification plus the underlying message and relevant context."""
        label = _LABELS.get(self.code, "Error")
        details = [
            f"{key}={self.context[key]}"
            for key in ("path", "command", "exit_code", "timeout_seconds", "field", "key")
            if key in self.context
        ]
        suffix = f" ({', '.join(details)})" if details else ""
        return f"{label}{suffix}: {self.message}"


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolError(ForgeError):
    """A handler failed. The code is derived from the tool name."""

    def __init__(self, tool: str, message: str, code: str | None = None, **context: Any) -> None:
        super().__init__(message, code or f"TOOL_{tool.upper().replace('.', '_')}_ERROR", tool=tool, **context)
        self.tool = tool


class UnknownToolError(ToolError):
    def __init__(self, key: str) -> None:
        super().__init__(key, f"No handler registered for '{key}'.", code="UNKNOWN_TOOL")


class PathOutsideWorkspaceError(ToolError):
    def __init__(self, tool: str, path: str, workspace: str) -> None:
        super().__init__(
            tool,
            f"Path '{path}' resolves outside the workspace {workspace}.",
            code="PATH_OUTSIDE_WORKSPACE",
            path=path,
        )


class PatchApplyError(ToolError):
    def __init__(self, path: str, attempted: list[str], stderr: str = "") -> None:
        super().__init__(
            "apply_patch",
            "git apply failed with every strategy: " + "; ".join(attempted),
            path=path,
            attempted=attempted,
            stderr=stderr or None,
        )
        self.attempted = attempted


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


class ExecutionError(ForgeError):
    code = "EXECUTION_ERROR"

    def __init__(self, message: str, command: str | None = None, exit_code: int | None = None, **context: Any) -> None:
        super().__init__(message, command=command, exit_code=exit_code, **context)
        self.command = command
        self.exit_code = exit_code


class CommandFailedError(ExecutionError):
    code = "COMMAND_FAILED"

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(
            f"Command exited with status {exit_code}.",
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(ExecutionError):
    code = "COMMAND_TIMEOUT"

    def __init__(self, command: str, timeout_seconds: float, stdout: str = "", stderr: str = "") -> None:
        super().__init__(
            f"Command timed out after {timeout_seconds}s.",
            command=command,
            timeout_seconds=timeout_seconds,
            stdout=stdout,
            stderr=stderr,
        )
        self.timeout_seconds = timeout_seconds


# ---------------------------------------------------------------------------
# Everything else
# ---------------------------------------------------------------------------


class ValidationError(ForgeError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, **context: Any) -> None:
        super().__init__(message, field=field, **context)
        self.field = field


class ConfigurationError(ForgeError):
    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, key=key)
        self.key = key


class TransportError(ForgeError):
    """The model call failed (network, HTTP status, broken stream)."""

    code = "TRANSPORT_ERROR"


_LABELS = {
    "UNKNOWN_TOOL": "Unknown tool",
    "PATH_OUTSIDE_WORKSPACE": "Blocked path",
    "FILE_NOT_FOUND": "File not found",
    "PERMISSION_DENIED": "Permission denied",
    "NOT_A_FILE": "Not a file",
    "TOOL_OPEN_FILE_ERROR": "Failed to open file",
    "TOOL_WRITE_FILE_ERROR": "Failed to write file",
    "TOOL_APPLY_PATCH_ERROR": "Patch failed",
    "EXECUTION_ERROR": "Execution failed",
    "COMMAND_FAILED": "Command failed",
    "COMMAND_TIMEOUT": "Command timed out",
    "VALIDATION_ERROR": "Validation failed",
    "CONFIGURATION_ERROR": "Configuration error",
    "TRANSPORT_ERROR": "Model transport error",
}


def from_os_error(tool: str, exc: OSError, **context: Any) -> ToolError:
    """Classify an OSError raised inside a handler."""
    if isinstance(exc, FileNotFoundError):
        code = "FILE_NOT_FOUND"
    elif isinstance(exc, PermissionError):
        code = "PERMISSION_DENIED"
    elif isinstance(exc, (IsADirectoryError, NotADirectoryError)):
        code = "NOT_A_FILE"
    else:
        code = None
    return ToolError(tool, exc.strerror or str(exc), code=code, **context)
