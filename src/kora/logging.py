"""JSONL event log for turns and memory activity."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    channel: str | None = None
    chunk_id: str | None = None
    duration_ms: float | None = None
    message_count: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Append-only event log, one JSON object per line.

    The active file is rotated once it reaches max_size_mb; at most
    backup_count rotated files are kept, oldest removed first.
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
        backup_count: int = 5,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".kora" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self.backup_count = backup_count

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def rotated_files(self) -> list[Path]:
        """Rotated log files, oldest first."""
        stem = Path(self.filename).stem
        return sorted(self.log_dir.glob(f"{stem}_*.jsonl"))

    def _rotate_if_needed(self) -> None:
        path = self.log_path
        if not path.exists() or path.stat().st_size < self.max_size_bytes:
            return

        # Microseconds keep names unique and sortable within one second
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        path.rename(self.log_dir / f"{path.stem}_{stamp}.jsonl")

        rotated = self.rotated_files()
        for old in rotated[: max(0, len(rotated) - self.backup_count)]:
            old.unlink(missing_ok=True)

    def _write(self, entry: LogEntry) -> None:
        self._rotate_if_needed()
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log(
        self,
        event: str,
        *,
        channel: str | None = None,
        chunk_id: str | None = None,
        duration_ms: float | None = None,
        message_count: int | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            channel=channel,
            chunk_id=chunk_id,
            duration_ms=duration_ms,
            message_count=message_count,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_turn(
        self,
        channel: str,
        success: bool,
        *,
        duration_ms: float | None = None,
        message_count: int | None = None,
        stop_reason: str | None = None,
        error: str | None = None,
    ) -> None:
        """Log a completed or failed turn."""
        extra = {"stop_reason": stop_reason} if stop_reason else {}
        self.log(
            "turn_complete" if success else "turn_failed",
            channel=channel,
            duration_ms=duration_ms,
            message_count=message_count,
            error=error,
            **extra,
        )

    def log_memory_write(
        self,
        channel: str,
        chunk_id: str | None,
        *,
        error: str | None = None,
    ) -> None:
        """Log the outcome of storing an exchange."""
        self.log(
            "memory_write",
            channel=channel,
            chunk_id=chunk_id,
            error=error,
            stored=chunk_id is not None,
        )

    def log_fact_operations(
        self,
        chunk_id: str,
        *,
        added: int,
        updated: int,
        deleted: int,
        confirmed: int,
    ) -> None:
        """Log the fact operations applied for an exchange."""
        self.log(
            "fact_operations",
            chunk_id=chunk_id,
            added=added,
            updated=updated,
            deleted=deleted,
            confirmed=confirmed,
        )

    def log_retrieval(self, query: str, results: int, *, channel: str | None = None) -> None:
        """Log a memory retrieval."""
        self.log("memory_retrieval", channel=channel, query=query[:100], results=results)


# Global logger instance
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(
    log_dir: str | Path | None = None,
    max_size_mb: float = 10.0,
    backup_count: int = 5,
) -> JSONLLogger:
    """Configure and return the global logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb, backup_count=backup_count)
    return _logger
