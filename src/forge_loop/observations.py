# observations.py
# Turns one pass's outcomes into short notes for the model's next pass.
# Observations are ephemeral: rendered into a single assistant message, then
# dropped.

from forge_loop.errors import CommandFailedError, CommandTimeoutError, ForgeError
from forge_loop.models import Executed, Failed, Observation, Outcome, Skipped, describe_action
from forge_loop.tools import tail

DEFAULT_BODY_LIMIT = 4000


def _executed_body(outcome: Executed) -> str:
    result = outcome.result
    match outcome.action.tool:
        case "open_file":
            state = "truncated" if result.get("truncated") else "full"
            return f"Read {outcome.action.path} ({state}):\n{result.get('content', '')}"
        case "write_file":
            return f"Wrote {result.get('bytes', 0)} bytes."
        case "apply_patch":
            return f"Patch applied ({result.get('strategy', 'unknown strategy')})."
        case "run":
            return (
                f"exit={result.get('exit_code')} | stdout={result.get('stdout', '').strip()} "
                f"| stderr={result.get('stderr', '').strip()}"
            )
        case _:
            return str(result.get("output") or "ok")


def _failed_body(error: Exception) -> str:
    if not isinstance(error, ForgeError):
        return f"failed: {error}"
    lines = [f"failed [{error.code}]: {error.display_message()}"]
    if isinstance(error, (CommandFailedError, CommandTimeoutError)):
        if error.context.get("stdout"):
            lines.append(f"stdout: {error.context['stdout'].strip()}")
        if error.context.get("stderr"):
            lines.append(f"stderr: {error.context['stderr'].strip()}")
    elif error.context.get("stderr"):
        lines.append(f"stderr: {error.context['stderr']}")
    return "\n".join(lines)


class ObservationLog:
    """Ordered observations for one pass. Bodies keep their tail past `body_limit`."""

    def __init__(self, body_limit: int = DEFAULT_BODY_LIMIT) -> None:
        self.body_limit = body_limit
        self._items: list[Observation] = []

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    @property
    def items(self) -> list[Observation]:
        return list(self._items)

    def add(self, title: str, body: str) -> Observation:
        observation = Observation(title=title, body=tail(body, self.body_limit))
        self._items.append(observation)
        return observation

    def extend(self, observations: list[Observation]) -> None:
        for observation in observations:
            self.add(observation.title, observation.body)

    def record(self, outcome: Outcome) -> Observation:
        title = describe_action(outcome.action)
        match outcome:
            case Executed():
                return self.add(title, _executed_body(outcome))
            case Skipped(reason=reason):
                return self.add(title, f"skipped: {reason}")
            case Failed(error=error):
                return self.add(title, _failed_body(error))
        raise TypeError(f"Unexpected outcome: {outcome!r}")

    def render(self) -> str:
        blocks = [f"### {o.title}\n{o.body}" for o in self._items]
        return "OBSERVATIONS:\n\n" + "\n\n".join(blocks)
