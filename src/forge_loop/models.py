# models.py
# Data contracts for the forge-loop turn orchestrator.
# No business logic lives here. Pure schema and validation.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Session-scoped enums
# ---------------------------------------------------------------------------


class ApprovalLevel(str, Enum):
    """How often a human must confirm an action."""

    SAFE = "safe"
    BALANCED = "balanced"
    AUTO = "auto"


class VerifyMode(str, Enum):
    """Which post-edit checks run after a successful write or patch."""

    NONE = "none"
    LINT = "lint"
    TEST = "test"
    BOTH = "both"

    @property
    def wants_lint(self) -> bool:
        return self in (VerifyMode.LINT, VerifyMode.BOTH)

    @property
    def wants_test(self) -> bool:
        return self in (VerifyMode.TEST, VerifyMode.BOTH)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class OpenFileAction(BaseModel):
    tool: Literal["open_file"] = "open_file"
    path: str = Field(..., min_length=1)


class WriteFileAction(BaseModel):
    tool: Literal["write_file"] = "write_file"
    path: str = Field(..., min_length=1)
    content: str


class ApplyPatchAction(BaseModel):
    tool: Literal["apply_patch"] = "apply_patch"
    path: str = Field(..., min_length=1)
    patch: str = Field(..., min_length=1, description="Unified diff text.")


class RunAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool: Literal["run"] = "run"
    cmd: str = Field(..., min_length=1)
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeoutSeconds", "timeoutSec", "timeout_seconds"),
    )


class GitAction(BaseModel):
    tool: Literal["git"] = "git"
    subtool: str = Field(..., min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


class PluginAction(BaseModel):
    """Namespaced extension action. Only dispatchable if a handler is registered."""

    tool: str = Field(..., min_length=1)
    subtool: str = ""
    args: dict[str, Any] = Field(default_factory=dict)


Action = Union[OpenFileAction, WriteFileAction, ApplyPatchAction, RunAction, GitAction, PluginAction]

# Closed set of built-in tags. Anything else is a PluginAction.
BUILTIN_ACTIONS: dict[str, type[BaseModel]] = {
    "open_file": OpenFileAction,
    "write_file": WriteFileAction,
    "apply_patch": ApplyPatchAction,
    "run": RunAction,
    "git": GitAction,
}

EDIT_TOOLS = frozenset({"write_file", "apply_patch"})


def action_key(action: Action) -> str:
    """Registry key for an action: `tool`, or `tool.subtool` for namespaced tools."""
    subtool = getattr(action, "subtool", "")
    return f"{action.tool}.{subtool}" if subtool else action.tool


def describe_action(action: Action) -> str:
    """One-line human label, used for observation titles and prompts."""
    if isinstance(action, (OpenFileAction, WriteFileAction, ApplyPatchAction)):
        return f"{action.tool} {action.path}"
    if isinstance(action, RunAction):
        return f"run {action.cmd}"
    return action_key(action).replace(".", " ", 1)


# ---------------------------------------------------------------------------
# Contract envelope
# ---------------------------------------------------------------------------


class ModelContract(BaseModel):
    """The structured envelope parsed from one model response."""

    model_config = ConfigDict(populate_by_name=True)

    plan: list[str] = Field(default_factory=list)
    rationale: str | None = None
    actions: list[Action] = Field(default_factory=list)
    message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("message", "message_markdown"),
    )


class Observation(BaseModel):
    """Feedback about one dispatched or skipped action. Never persisted."""

    title: str
    body: str = ""


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# Dispatch outcomes
# ---------------------------------------------------------------------------


class Executed(BaseModel):
    action: Action
    result: dict[str, Any] = Field(default_factory=dict)


class Skipped(BaseModel):
    action: Action
    reason: str


class Failed(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    action: Action
    error: Exception


Outcome = Union[Executed, Skipped, Failed]


# ---------------------------------------------------------------------------
# Model transport shapes
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionOptions(BaseModel):
    stream: bool = True
    temperature: float = 0.3
    want_reasoning: bool = False


class StreamDelta(BaseModel):
    content_delta: str = ""
    reasoning_delta: str | None = None
    usage: Usage | None = None


class Completion(BaseModel):
    text: str
    usage: Usage | None = None
    reasoning: str | None = None


class UsageCounter(BaseModel):
    """Running token tally for display. Owned by one session, never global."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, usage: Usage | None) -> None:
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# ---------------------------------------------------------------------------
# Session log record
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    role: Literal["user", "assistant", "tool", "observation"]
    content: str
    meta: dict[str, Any] = Field(default_factory=dict)
