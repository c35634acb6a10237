# safety.py
# Approval policy. Pure functions, no I/O.
#
# Approval cost scales with blast radius, not with action type: a small write
# is cheap to undo with git, a force-push is not.

import re

from forge_loop.models import (
    Action,
    ApplyPatchAction,
    ApprovalLevel,
    GitAction,
    OpenFileAction,
    RunAction,
    WriteFileAction,
)

WRITE_AUTO_APPROVE_LIMIT = 8 * 1024

_DESTRUCTIVE_PATTERNS = [
    re.compile(p)
    for p in (
        r"\brm\s+(?:-\S+\s+)*(?:-[a-z]*r[a-z]*|--recursive)\b",
        r"\brmdir\b",
        r"\bmkfs\b",
        r"\bformat(?:\.com)?\s+[a-z]:",
        r"\bdrop\s+(?:database|table)\b",
        r"\bshutdown\b",
        r"\breboot\b",
        r"\bsystemctl\b",
        r"\b(?:npm|yarn|pnpm)\s+publish\b",
        r"\btwine\s+upload\b",
        r"\bgit\s+push\b",
        r"\bgit\s+reset\b",
        r"\bgit\s+rebase\b",
        r"\bgit\s+filter-(?:branch|repo)\b",
        r"\bdocker\s+push\b",
        r"\bkubectl\s+apply\b",
        r"\b(?:curl|wget)\b.*\|\s*(?:sudo\s+)?(?:ba|z)?sh\b",
    )
]

_CHAINING_RE = re.compile(r"[;&|]")

READ_ONLY_GIT_SUBTOOLS = frozenset({"status", "diff", "log"})


def is_destructive(cmd: str) -> bool:
    """True for irreversible commands or anything chaining/piping several commands."""
    normalized = " ".join(cmd.split()).lower()
    if any(pattern.search(normalized) for pattern in _DESTRUCTIVE_PATTERNS):
        return True
    return bool(_CHAINING_RE.search(normalized))


def requires_approval_for_run(cmd: str, level: ApprovalLevel) -> bool:
    if level == ApprovalLevel.AUTO:
        return False
    if level == ApprovalLevel.SAFE:
        return True
    return is_destructive(cmd)


def utf8_size(text: str) -> int:
    """Encoded size in bytes. Lone surrogates count as 3 bytes instead of raising."""
    return len(text.encode("utf-8", errors="surrogatepass"))


def requires_approval_for_write(level: ApprovalLevel, size_bytes: int | None = None) -> bool:
    """Balanced mode prompts for unknown sizes (patches) and anything over 8 KiB."""
    if level == ApprovalLevel.AUTO:
        return False
    if level == ApprovalLevel.SAFE:
        return True
    if size_bytes is None:
        return True
    return size_bytes > WRITE_AUTO_APPROVE_LIMIT


class ApprovalPolicy:
    """
    Session-scoped policy deciding whether an action needs human confirmation.

    `allow_dangerous` is the explicit escape hatch (FORGE_ALLOW_DANGEROUS).
    It is honoured in needs_approval() and nowhere else.
    """

    def __init__(self, level: ApprovalLevel = ApprovalLevel.BALANCED, allow_dangerous: bool = False) -> None:
        self._level = ApprovalLevel(level)
        self._allow_dangerous = allow_dangerous

    @property
    def level(self) -> ApprovalLevel:
        return self._level

    def needs_approval(self, action: Action) -> bool:
        if self._allow_dangerous:
            return False

        if isinstance(action, OpenFileAction):
            return False
        if isinstance(action, WriteFileAction):
            return requires_approval_for_write(self._level, utf8_size(action.content))
        if isinstance(action, ApplyPatchAction):
            return requires_approval_for_write(self._level)
        if isinstance(action, RunAction):
            return requires_approval_for_run(action.cmd, self._level)
        if isinstance(action, GitAction) and action.subtool in READ_ONLY_GIT_SUBTOOLS:
            return False
        # Mutating git subtools and plugin actions: blast radius unknown.
        return requires_approval_for_write(self._level)
