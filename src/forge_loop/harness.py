# harness.py
# Turn orchestrator
#
# The orchestrator is the kernel. The model is a passive responder: this class
# owns the message list, the pass loop, approval, dispatch and feedback.
#
# Control flow per turn:
#   user input → [system, user] → model → contract parser
#   → per action: approval policy → (confirm) → dispatcher
#   → verification (once, after a successful edit) → observations
#   → fold into an assistant message → next pass (bounded) | done
#
# All terminal output is delegated to display.py. No formatting here.

from enum import Enum
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from forge_loop import display
from forge_loop.config import Settings
from forge_loop.contracts import parse_contract
from forge_loop.errors import ForgeError, ToolError, TransportError
from forge_loop.llm import ModelClient
from forge_loop.models import (
    EDIT_TOOLS,
    Action,
    ApplyPatchAction,
    ChatMessage,
    Completion,
    CompletionOptions,
    Executed,
    Failed,
    GitAction,
    Observation,
    Outcome,
    RunAction,
    SessionRecord,
    Skipped,
    UsageCounter,
    VerifyMode,
    WriteFileAction,
    action_key,
    describe_action,
)
from forge_loop.observations import ObservationLog
from forge_loop.safety import ApprovalPolicy, utf8_size
from forge_loop.session_log import LoggerSessionLog, SessionLog
from forge_loop.tools import ToolContext, ToolDispatcher
from forge_loop.verify import VerificationRunner

ConfirmFn = Callable[[str, bool], bool]


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

_TRACE_INSTRUCTIONS = {
    "none": 'Do not include "rationale".',
    "plan": 'Include a concise "rationale" (at most 2 short sentences).',
    "verbose": 'Include a concise "rationale" (at most 3 short sentences). Summarize only; no hidden chain-of-thought.',
}

SYSTEM_PROMPT = """\
You are a senior software engineer and careful agent working in a live repository.
You can read files, write files, propose patches (unified diff), run commands and \
use git through the host tools. The host executes your actions in order and reports \
back with an OBSERVATIONS message.

CRITICAL OUTPUT CONTRACT: respond ONLY with a single JSON object matching this schema:

{
  "plan": ["short step", "short step"],
  "rationale": "short summary of why these steps",
  "actions": [
    {"tool": "open_file", "path": "path/to/file"},
    {"tool": "run", "cmd": "pytest -q", "timeoutSeconds": 120},
    {"tool": "apply_patch", "path": "src/x.py", "patch": "UNIFIED_DIFF"},
    {"tool": "write_file", "path": "README.md", "content": "..."},
    {"tool": "git", "subtool": "commit", "args": {"message": "fix: ..."}},
    {"tool": "git", "subtool": "create_branch", "args": {"name": "feature/x"}}
  ],
  "message": "human-facing notes (optional, markdown)"
}

{trace}

Rules:
- Never output explanations outside the JSON.
- Prefer small, safe changes. Use unified diffs for edits to existing files.
- Paths are relative to the repository root.
- Destructive or chained shell commands may be declined by the human; plan for that.
- When the task is complete, return an empty "actions" list and summarise in "message".\
"""


def build_system_prompt(trace: str = "plan") -> str:
    return SYSTEM_PROMPT.replace("{trace}", _TRACE_INSTRUCTIONS.get(trace, _TRACE_INSTRUCTIONS["plan"]))


def approval_prompt(action: Action) -> str:
    if isinstance(action, RunAction):
        return f"Allow RUN: {action.cmd}?"
    if isinstance(action, WriteFileAction):
        return f"Write {action.path}? (bytes: {utf8_size(action.content)})"
    if isinstance(action, ApplyPatchAction):
        return f"Apply PATCH to {action.path}?"
    if isinstance(action, GitAction) and action.subtool == "commit":
        return f"Create commit with message: \"{action.args.get('message', '')}\"?"
    return f"Allow {describe_action(action)}?"


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------


class TurnState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    STREAMING = "streaming"
    PARSE_FAILED = "parse_failed"
    CONTRACT_READY = "contract_ready"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    OBSERVED = "observed"
    DONE = "done"


class TurnResult(BaseModel):
    """What one human turn produced. `states` is the full transition trace."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    states: list[TurnState] = Field(default_factory=list)
    passes: int = 0
    outcomes: list[Outcome] = Field(default_factory=list)
    observations: list[Observation] = Field(default_factory=list)
    final_text: str | None = None
    error: str | None = None
    verified: bool = False
    interrupted: bool = False

    @property
    def state(self) -> TurnState:
        return self.states[-1] if self.states else TurnState.AWAITING_INPUT


class SessionContext(BaseModel):
    """Per-session counters shown to the user. Never module-level."""

    usage: UsageCounter = Field(default_factory=UsageCounter)
    turns: int = 0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Owns the bounded multi-pass loop for each user turn.

    Collaborators are injected; only `model` and `settings` are required.

    Example:
        settings = Settings.from_env()
        orchestrator = Orchestrator(OpenRouterModel(settings.model, settings.api_key), settings)
        orchestrator.run_turn("Add a --version flag to the CLI and run the tests.")
    """

    def __init__(
        self,
        model: ModelClient,
        settings: Settings,
        confirm: ConfirmFn | None = None,
        dispatcher: ToolDispatcher | None = None,
        verifier: VerificationRunner | None = None,
        session_log: SessionLog | None = None,
    ) -> None:
        self.model = model
        self.settings = settings
        self.confirm = confirm or display.confirm
        self.policy = ApprovalPolicy(settings.approval_level, settings.allow_dangerous)
        self.dispatcher = dispatcher or ToolDispatcher(
            ToolContext(
                workspace=settings.workspace,
                default_timeout_seconds=settings.cmd_timeout_seconds,
                stdio_limit=settings.stdio_limit,
                open_file_max_bytes=settings.open_file_max_bytes,
            )
        )
        self.verifier = verifier or VerificationRunner(settings.workspace)
        self.session_log = session_log or LoggerSessionLog()
        self.context = SessionContext()
        self.state = TurnState.AWAITING_INPUT

    # ------------------------------------------------------------------
    # Small helpers
    # ------------------------------------------------------------------

    def _enter(self, state: TurnState, result: TurnResult) -> None:
        logger.debug(f"[TURN] {self.state.value} -> {state.value}")
        self.state = state
        result.states.append(state)

    def _log(self, role: str, content: str, **meta: Any) -> None:
        self.session_log.append(SessionRecord(role=role, content=content, meta=meta))

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    def _complete(self, messages: list[ChatMessage], pass_number: int) -> str:
        """Submit the message list and wait for the whole response, streamed or not."""
        options = CompletionOptions(
            stream=self.settings.stream,
            temperature=self.settings.temperature,
            want_reasoning=self.settings.trace != "none",
        )
        with display.calling_model(pass_number, self.settings.max_passes):
            response = self.model.complete(list(messages), options)
            if isinstance(response, Completion):
                self.context.usage.add(response.usage)
                return response.text

            parts: list[str] = []
            try:
                for delta in response:
                    parts.append(delta.content_delta)
                    self.context.usage.add(delta.usage)
            finally:
                close = getattr(response, "close", None)
                if close is not None:
                    close()
            return "".join(parts)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch_one(self, action: Action) -> Outcome:
        if self.policy.needs_approval(action):
            if not self.confirm(approval_prompt(action), False):
                logger.info(f"[TURN] Declined: {describe_action(action)}")
                return Skipped(action=action, reason="declined by user")
        return self.dispatcher.execute(action)

    def execute_actions(self, actions: list[Action], observations: ObservationLog, result: TurnResult) -> bool:
        """
        Dispatch actions strictly in contract order, one at a time.

        A failure or a declined approval never stops the remaining actions.
        Returns True when at least one write or patch succeeded.
        """
        made_edits = False
        for index, action in enumerate(actions):
            display.action_start(index, len(actions), action)
            try:
                outcome = self._dispatch_one(action)
            except Exception as exc:
                logger.exception(f"[TURN] {describe_action(action)} aborted before dispatch")
                outcome = Failed(action=action, error=ToolError(action_key(action), f"{type(exc).__name__}: {exc}"))

            result.outcomes.append(outcome)
            observations.record(outcome)
            display.action_outcome(outcome)
            self._log("tool", describe_action(action), outcome=type(outcome).__name__)

            if isinstance(outcome, Executed) and action.tool in EDIT_TOOLS:
                made_edits = True
        return made_edits

    def _verify(self, observations: ObservationLog, result: TurnResult) -> None:
        mode = self.settings.verify_mode
        self._enter(TurnState.VERIFYING, result)
        display.verification_start(mode)
        report = self.verifier.run(mode)
        display.verification_result(report.ok, report.summary)
        observations.add(f"verify ({mode.value})", report.summary)
        result.verified = True

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def run_pass(self, messages: list[ChatMessage], pass_number: int, result: TurnResult) -> ObservationLog | None:
        """
        One submit → parse → dispatch → observe cycle.

        Returns the pass's observations, or None when the pass ended without
        anything to feed back (no contract, transport error).
        """
        self._enter(TurnState.STREAMING, result)
        try:
            text = self._complete(messages, pass_number)
        except TransportError as exc:
            logger.warning(f"[TURN] Model call failed: {exc}")
            display.transport_error(exc)
            result.error = exc.display_message()
            return None
        self._log("assistant", text, pass_number=pass_number)

        parsed = parse_contract(text)
        if not parsed.found:
            self._enter(TurnState.PARSE_FAILED, result)
            if text.strip():
                display.raw_response(text)
            result.final_text = text
            return None

        self._enter(TurnState.CONTRACT_READY, result)
        contract = parsed.contract
        display.contract_parsed(contract)

        observations = ObservationLog(self.settings.observation_body_limit)
        if parsed.issues:
            display.validation_issues(parsed.issues)
            observations.extend(parsed.issues)

        made_edits = False
        if contract.actions:
            self._enter(TurnState.EXECUTING, result)
            made_edits = self.execute_actions(contract.actions, observations, result)

        if contract.message:
            display.model_message(contract.message)
            result.final_text = contract.message

        if made_edits and self.settings.verify_mode != VerifyMode.NONE and not result.verified:
            self._verify(observations, result)

        self._enter(TurnState.OBSERVED, result)
        for observation in observations.items:
            self._log("observation", observation.body, title=observation.title)
        return observations

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def _run_passes(self, messages: list[ChatMessage], passes_remaining: int, result: TurnResult) -> None:
        while passes_remaining > 0:
            passes_remaining -= 1
            result.passes += 1
            observations = self.run_pass(messages, result.passes, result)
            if not observations:
                return

            result.observations = observations.items
            messages.append(ChatMessage(role="assistant", content=observations.render()))
            display.observations_folded(len(observations), passes_remaining)

    def run_turn(self, user_input: str) -> TurnResult:
        """
        Full pipeline for one human input.

        Always returns; the caller gets a TurnResult whether the turn finished,
        hit the pass limit, lost the model, or was interrupted.
        """
        result = TurnResult()
        self.context.turns += 1
        display.prompt_received(user_input)
        self._log("user", user_input, turn=self.context.turns)

        # The message list is rebuilt per turn and only ever appended to.
        messages = [
            ChatMessage(role="system", content=build_system_prompt(self.settings.trace)),
            ChatMessage(role="user", content=user_input),
        ]

        try:
            self._run_passes(messages, self.settings.max_passes, result)
        except KeyboardInterrupt:
            logger.info("[TURN] Interrupted by user")
            display.interrupted()
            result.interrupted = True
            self._enter(TurnState.AWAITING_INPUT, result)
            return result

        self._enter(TurnState.DONE, result)
        display.turn_done(result.passes, self.context.usage)
        self.state = TurnState.AWAITING_INPUT
        return result

    def chat(self, get_input: Callable[[], str] = display.ask_input) -> None:
        """Interactive loop until /exit, EOF, or Ctrl-C at the prompt."""
        display.banner(
            self.settings.model,
            self.settings.approval_level,
            self.settings.verify_mode,
            self.settings.allow_dangerous,
        )
        while True:
            try:
                user_input = get_input()
            except (EOFError, KeyboardInterrupt):
                return
            if not user_input or not user_input.strip():
                continue
            if user_input.strip().lower() == "/exit":
                return
            try:
                self.run_turn(user_input)
            except ForgeError as exc:
                logger.exception("[TURN] Turn aborted")
                display.error(exc.display_message())
