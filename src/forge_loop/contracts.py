# contracts.py
# Contract parser: raw model text -> ModelContract.
#
# Never raises. A pass with unparseable output degrades to "no contract" and
# the harness shows the raw text instead. Bad actions are dropped one at a time
# so their siblings still run.

import json
import re
from typing import Any

import pydantic
from loguru import logger

from forge_loop.models import BUILTIN_ACTIONS, Action, ModelContract, Observation, PluginAction

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)

ENVELOPE_KEYS = frozenset({"plan", "rationale", "actions", "message", "message_markdown"})


class ParseResult(pydantic.BaseModel):
    """`found` is False when no contract was present; `issues` lists dropped actions."""

    contract: ModelContract = pydantic.Field(default_factory=ModelContract)
    found: bool = False
    issues: list[Observation] = pydantic.Field(default_factory=list)


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def _loads(raw: str) -> Any:
    # strict=False keeps literal newlines inside strings legal.
    return json.loads(raw, strict=False)


def _last_embedded_object(text: str) -> dict | None:
    """Find the last `{...}` object that decodes cleanly inside surrounding prose."""
    decoder = json.JSONDecoder(strict=False)
    found = None
    index = text.find("{")
    while index != -1:
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            found = value
        index = text.find("{", end)
    return found


def extract_json_object(text: str) -> dict | None:
    """
    Pull the contract object out of raw model text.

    Fenced blocks win when present, and the last one that parses is kept so a
    model restating corrected JSON later in its answer gets the final say.
    Without fences the whole text is tried, then the last object embedded in
    prose.
    """
    fences = _FENCE_RE.findall(text)
    if fences:
        last_good = None
        for block in fences:
            try:
                value = _loads(block.strip())
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                last_good = value
        return last_good

    stripped = text.strip()
    if not stripped:
        return None
    try:
        value = _loads(stripped)
    except json.JSONDecodeError:
        return _last_embedded_object(stripped)
    return value if isinstance(value, dict) else None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _format_issues(exc: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}" for err in exc.errors()
    )


def _validate_action(index: int, raw: Any) -> tuple[Action | None, Observation | None]:
    if not isinstance(raw, dict) or not isinstance(raw.get("tool"), str):
        return None, Observation(
            title=f"invalid action #{index + 1}",
            body="Each action must be an object with a string 'tool' field.",
        )

    tag = raw["tool"]
    model = BUILTIN_ACTIONS.get(tag, PluginAction)
    try:
        return model.model_validate(raw), None
    except pydantic.ValidationError as exc:
        return None, Observation(title=f"invalid action #{index + 1} ({tag})", body=_format_issues(exc))


def parse_contract(text: str) -> ParseResult:
    """Parse raw model output into a ParseResult. Never raises."""
    data = extract_json_object(text)
    if data is None or not ENVELOPE_KEYS.intersection(data):
        return ParseResult()

    raw_actions = data.get("actions") or []
    if not isinstance(raw_actions, list):
        logger.debug("[PARSE] 'actions' is not a list; treating output as prose")
        return ParseResult()

    envelope = {k: v for k, v in data.items() if k != "actions"}
    try:
        contract = ModelContract.model_validate(envelope)
    except pydantic.ValidationError as exc:
        logger.debug(f"[PARSE] Envelope rejected: {_format_issues(exc)}")
        return ParseResult()

    actions: list[Action] = []
    issues: list[Observation] = []
    for index, raw in enumerate(raw_actions):
        action, issue = _validate_action(index, raw)
        if action is not None:
            actions.append(action)
        if issue is not None:
            logger.debug(f"[PARSE] Dropped {issue.title}: {issue.body}")
            issues.append(issue)

    contract.actions = actions
    return ParseResult(contract=contract, found=True, issues=issues)
