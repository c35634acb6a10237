# verify.py
# Post-edit verification: lint and/or test, run once per turn after a
# successful write or patch.
#
# The runner never names a tool itself. It asks an EntryPointDiscovery for a
# command string per check and reports "skipped" when there is none.

import json
import tomllib
from pathlib import Path
from typing import Literal, Protocol

from loguru import logger
from pydantic import BaseModel

from forge_loop.errors import ExecutionError
from forge_loop.models import VerifyMode
from forge_loop.tools import run_command

Check = Literal["lint", "test"]

VERIFY_TIMEOUT_SECONDS = 10 * 60
VERIFY_STDIO_LIMIT = 500_000

SKIP_HINTS: dict[str, str] = {
    "lint": (
        "lint: skipped (no lint entry point). Hint: add a `lint` script to "
        "package.json or a [tool.ruff] table to pyproject.toml."
    ),
    "test": (
        "test: skipped (no test script). Hint: add a `test` script to "
        "package.json or a [tool.pytest.ini_options] table to pyproject.toml."
    ),
}


class VerificationReport(BaseModel):
    ok: bool
    summary: str


class EntryPointDiscovery(Protocol):
    def discover(self, check: Check) -> str | None:
        """Return the command that runs `check`, or None when there is none."""


# ---------------------------------------------------------------------------
# Default discovery
# ---------------------------------------------------------------------------


class ProjectDiscovery:
    """Looks for npm scripts first, then Python project configuration."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    def _package_scripts(self) -> dict:
        path = self.workspace / "package.json"
        if not path.is_file():
            return {}
        try:
            scripts = json.loads(path.read_text(encoding="utf-8")).get("scripts")
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning(f"[VERIFY] Ignoring unreadable package.json: {exc}")
            return {}
        return scripts if isinstance(scripts, dict) else {}

    def _pyproject_tools(self) -> dict:
        path = self.workspace / "pyproject.toml"
        if not path.is_file():
            return {}
        try:
            with open(path, "rb") as fh:
                tools = tomllib.load(fh).get("tool", {})
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning(f"[VERIFY] Ignoring unreadable pyproject.toml: {exc}")
            return {}
        return tools if isinstance(tools, dict) else {}

    def discover(self, check: Check) -> str | None:
        scripts = self._package_scripts()
        if isinstance(scripts.get(check), str):
            return "npm run lint --silent" if check == "lint" else "npm test --silent"

        tools = self._pyproject_tools()
        if check == "lint" and ("ruff" in tools or (self.workspace / "ruff.toml").is_file()):
            return "ruff check ."
        if check == "test" and (
            "ini_options" in tools.get("pytest", {}) or (self.workspace / "pytest.ini").is_file()
        ):
            return "python -m pytest -q"
        return None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class VerificationRunner:
    def __init__(
        self,
        workspace: Path,
        discovery: EntryPointDiscovery | None = None,
        timeout_seconds: float = VERIFY_TIMEOUT_SECONDS,
        stdio_limit: int = VERIFY_STDIO_LIMIT,
    ) -> None:
        self.workspace = workspace
        self.discovery = discovery or ProjectDiscovery(workspace)
        self.timeout_seconds = timeout_seconds
        self.stdio_limit = stdio_limit

    def run(self, mode: VerifyMode) -> VerificationReport:
        """
        Run the requested checks one after another and AND their exit codes.

        Missing entry points are skipped, not failed. Commands never run in
        parallel: test suites may share fixtures and ports.
        """
        mode = VerifyMode(mode)
        wanted: list[Check] = []
        if mode.wants_lint:
            wanted.append("lint")
        if mode.wants_test:
            wanted.append("test")

        lines: list[str] = []
        commands: list[tuple[Check, str]] = []
        for check in wanted:
            cmd = self.discovery.discover(check)
            if cmd:
                commands.append((check, cmd))
            else:
                lines.append(SKIP_HINTS[check])

        if not commands:
            lines.append("verification disabled or nothing to run.")
            return VerificationReport(ok=True, summary="\n".join(lines))

        ok = True
        for check, cmd in commands:
            lines.append(f"$ {cmd}    # {check}")
            logger.info(f"[VERIFY] {check}: {cmd}")
            try:
                result = run_command(cmd, self.workspace, self.timeout_seconds, self.stdio_limit)
            except ExecutionError as exc:
                lines.append(exc.display_message())
                ok = False
            else:
                output = (result.stdout or result.stderr).strip()
                lines.append(output or "(no output)")
                if result.exit_code != 0:
                    lines.append(f"exit code: {result.exit_code}")
                    ok = False
            lines.append("")

        return VerificationReport(ok=ok, summary="\n".join(lines).rstrip())
