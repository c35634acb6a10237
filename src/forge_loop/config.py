# config.py
# Session configuration from the environment (and .env files), plus the
# single place logging sinks are installed.

import os
import sys
from pathlib import Path
from typing import Literal

import pydantic
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from forge_loop.errors import ConfigurationError
from forge_loop.llm import DEFAULT_BASE_URL
from forge_loop.models import ApprovalLevel, VerifyMode

TraceLevel = Literal["none", "plan", "verbose"]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def load_env_files(cwd: Path | None = None) -> list[Path]:
    """Load .env.local then .env from `cwd`. Earlier files win."""
    loaded = []
    for name in (".env.local", ".env"):
        path = (cwd or Path.cwd()) / name
        if path.is_file():
            load_dotenv(path, override=False)
            loaded.append(path)
    return loaded


def _bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"expected a boolean, got {raw!r}", key=key)


def _number(key: str, default, cast=int):
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"expected a number, got {raw!r}", key=key) from exc
    if value <= 0 and cast is int:
        raise ConfigurationError(f"must be positive, got {raw!r}", key=key)
    return value


def _choice(key: str, enum, default):
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return enum(raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum)
        raise ConfigurationError(f"expected one of {allowed}, got {raw!r}", key=key) from exc


class Settings(BaseModel):
    """Everything one session needs. Immutable once the session starts."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = "x-ai/grok-code-fast-1"
    approval_level: ApprovalLevel = ApprovalLevel.BALANCED
    verify_mode: VerifyMode = VerifyMode.NONE
    allow_dangerous: bool = False
    max_passes: int = Field(default=2, ge=1)
    cmd_timeout_seconds: float = Field(default=120, gt=0)
    stdio_limit: int = Field(default=200_000, gt=0)
    open_file_max_bytes: int = Field(default=200_000, gt=0)
    observation_body_limit: int = Field(default=4000, gt=0)
    temperature: float = 0.3
    stream: bool = True
    trace: TraceLevel = "plan"
    log_level: str = "WARNING"
    workspace: Path = Field(default_factory=Path.cwd)

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> "Settings":
        workspace = workspace or Path.cwd()
        load_env_files(workspace)

        trace = os.getenv("FORGE_TRACE", "plan").strip().lower()
        if trace not in ("none", "plan", "verbose"):
            raise ConfigurationError(f"expected none, plan or verbose, got {trace!r}", key="FORGE_TRACE")

        values = dict(
            api_key=os.getenv("OPENROUTER_API_KEY"),
            base_url=os.getenv("FORGE_BASE_URL", DEFAULT_BASE_URL),
            model=os.getenv("FORGE_MODEL", "x-ai/grok-code-fast-1"),
            approval_level=_choice("FORGE_APPROVAL_LEVEL", ApprovalLevel, ApprovalLevel.BALANCED),
            verify_mode=_choice("FORGE_VERIFY", VerifyMode, VerifyMode.NONE),
            allow_dangerous=_bool("FORGE_ALLOW_DANGEROUS", False),
            max_passes=_number("FORGE_MAX_PASSES", 2),
            cmd_timeout_seconds=_number("FORGE_CMD_TIMEOUT_SECONDS", 120, float),
            stdio_limit=_number("FORGE_TOOL_STDIO_LIMIT", 200_000),
            open_file_max_bytes=_number("FORGE_OPEN_FILE_MAX_BYTES", 200_000),
            observation_body_limit=_number("FORGE_OBSERVATION_LIMIT", 4000),
            temperature=_number("FORGE_TEMPERATURE", 0.3, float),
            stream=_bool("FORGE_STREAM", True),
            trace=trace,
            log_level=os.getenv("FORGE_LOG_LEVEL", "WARNING").strip().upper(),
            workspace=workspace,
        )
        try:
            return cls(**values)
        except pydantic.ValidationError as exc:
            error = exc.errors()[0]
            key = ".".join(str(p) for p in error["loc"])
            raise ConfigurationError(error["msg"], key=key) from exc


def configure_logging(level: str = "WARNING") -> None:
    """Replace loguru's default sink with one stderr sink at `level`."""
    logger.remove()
    try:
        logger.add(sys.stderr, level=level, format="<dim>{time:HH:mm:ss}</dim> <level>{level: <7}</level> {message}")
    except ValueError as exc:
        raise ConfigurationError(f"unknown log level {level!r}", key="FORGE_LOG_LEVEL") from exc
