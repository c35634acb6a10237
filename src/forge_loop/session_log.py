# session_log.py
# Session-log collaborator. The core appends records; storage is somebody
# else's concern.

from typing import Protocol

from loguru import logger

from forge_loop.models import SessionRecord


class SessionLog(Protocol):
    def append(self, record: SessionRecord) -> None: ...


class LoggerSessionLog:
    """Forwards records to loguru with the record fields bound as extras."""

    def __init__(self, preview_chars: int = 200) -> None:
        self.preview_chars = preview_chars

    def append(self, record: SessionRecord) -> None:
        content = record.content
        if len(content) > self.preview_chars:
            content = content[: self.preview_chars] + "..."
        logger.bind(role=record.role, timestamp=record.timestamp.isoformat(), meta=record.meta).info(
            f"[SESSION] {record.role}: {content}"
        )


class MemorySessionLog:
    """Keeps records in a list. Useful for tests and for embedding callers."""

    def __init__(self) -> None:
        self.records: list[SessionRecord] = []

    def append(self, record: SessionRecord) -> None:
        self.records.append(record)
