"""Structured run logging.

Provides:
- JSON-lines event log ({timestamp, level, host, message, ...})
- Run correlation IDs
- Sensitive data redaction
- Automatic log rotation
- Console mirroring at the matching level
"""

import fcntl
import json
import os
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from fwa.core.output import Console, console as default_console


# Default paths
DEFAULT_LOG_PATH = Path("logs/fwa.log")
DEFAULT_MAX_SIZE_MB = 50
DEFAULT_BACKUP_COUNT = 5


class LogLevel(str, Enum):
    """Severity of a logged event."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditEventType(Enum):
    """Types of logged events."""
    RUN_START = "run.start"
    RUN_END = "run.end"
    MESSAGE = "message"
    STATE_TRANSITION = "host.state"
    COMMAND = "host.command"
    COMMAND_RESULT = "host.command_result"
    BACKUP_CREATE = "backup.create"
    ROLLBACK = "host.rollback"
    DEPLOY_RESULT = "host.result"


# Keys that contain sensitive data
SENSITIVE_KEYS = frozenset({
    "password", "secret", "token", "credential", "passphrase", "identity",
})


def _sanitize_value(key: str, value: Any) -> Any:
    """Redact values whose key suggests sensitive data."""
    key_lower = key.lower()

    if any(s in key_lower for s in SENSITIVE_KEYS):
        return "***REDACTED***"

    if isinstance(value, dict):
        return {k: _sanitize_value(k, v) for k, v in value.items()}

    if isinstance(value, list):
        return [_sanitize_value(key, v) for v in value]

    return value


@dataclass
class AuditEvent:
    """A single structured log event."""
    level: LogLevel
    message: str
    host: Optional[str] = None
    event_type: AuditEventType = AuditEventType.MESSAGE
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    fields: dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "host": self.host,
            "message": self.message,
            "event": self.event_type.value,
            "run_id": self.run_id,
            **{k: _sanitize_value(k, v) for k, v in self.fields.items()},
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Log sink for deployment runs.

    Features:
    - Append-only JSON log file
    - Atomic appends with file locking (safe across processes)
    - A thread lock so concurrent host tasks never interleave lines
    - Automatic log rotation
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
        console: Optional[Console] = None,
    ) -> None:
        """Initialize logger.

        Args:
            log_path: Path to log file
            max_size_mb: Maximum log file size before rotation
            backup_count: Number of rotated files to keep
            enabled: Whether file logging is enabled
            console: Console that mirrors events (None = global console)
        """
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.console = console or default_console

        self.run_id = uuid.uuid4().hex[:12]
        self._lock = threading.Lock()

    def _ensure_log_directory(self) -> bool:
        """Create log directory.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            return True
        except OSError as e:
            self.console.debug(f"Cannot create log directory: {e}")
            return False

    def log(
        self,
        level: LogLevel,
        host: Optional[str],
        message: str,
        *,
        event: AuditEventType = AuditEventType.MESSAGE,
        echo: bool = True,
        **fields: Any,
    ) -> AuditEvent:
        """Log an event.

        Args:
            level: Event severity
            host: Host the event concerns (None for run-level events)
            message: Human-readable message
            event: Event type
            echo: Mirror the event to the console
            **fields: Extra structured fields

        Returns:
            The logged event
        """
        entry = AuditEvent(
            level=level,
            message=message,
            host=host,
            event_type=event,
            fields=fields,
            run_id=self.run_id,
        )

        if echo:
            self._echo(entry)

        if self.enabled:
            self._write(entry.to_json() + "\n")

        return entry

    def debug(self, host: Optional[str], message: str, **kwargs: Any) -> AuditEvent:
        return self.log(LogLevel.DEBUG, host, message, **kwargs)

    def info(self, host: Optional[str], message: str, **kwargs: Any) -> AuditEvent:
        return self.log(LogLevel.INFO, host, message, **kwargs)

    def warning(self, host: Optional[str], message: str, **kwargs: Any) -> AuditEvent:
        return self.log(LogLevel.WARNING, host, message, **kwargs)

    def error(self, host: Optional[str], message: str, **kwargs: Any) -> AuditEvent:
        return self.log(LogLevel.ERROR, host, message, **kwargs)

    def _echo(self, entry: AuditEvent) -> None:
        if entry.level == LogLevel.ERROR:
            self.console.error(entry.message, host=entry.host)
        elif entry.level == LogLevel.WARNING:
            self.console.warn(entry.message, host=entry.host)
        elif entry.level == LogLevel.INFO:
            self.console.step(entry.message, host=entry.host)
        else:
            self.console.debug(entry.message, host=entry.host)

    def _write(self, line: str) -> None:
        with self._lock:
            if not self._ensure_log_directory():
                return

            try:
                with self._atomic_append() as f:
                    f.write(line)
            except OSError as e:
                self.console.debug(f"Failed to write log: {e}")
                return

            self._rotate_if_needed()

    @contextmanager
    def _atomic_append(self) -> Generator:
        """Context manager for atomic append with file locking."""
        fd = os.open(
            self.log_path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT,
            0o640,
        )
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            with os.fdopen(fd, "a") as f:
                yield f
                f.flush()
                os.fsync(fd)
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            raise

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            self.console.debug(f"Log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            dst = self.log_path.with_suffix(f".{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_suffix(".1"))
        self.log_path.touch(mode=0o640)

    def log_run_start(self, command: str, hosts: list[str]) -> None:
        """Log run start."""
        self.log(
            LogLevel.INFO,
            None,
            f"Run {self.run_id} started: {command} on {len(hosts)} host(s)",
            event=AuditEventType.RUN_START,
            command=command,
            hosts=hosts,
        )

    def log_run_end(self, summary: dict[str, int]) -> None:
        """Log run end with per-state counts."""
        self.log(
            LogLevel.INFO,
            None,
            f"Run {self.run_id} finished",
            event=AuditEventType.RUN_END,
            echo=False,
            summary=summary,
        )
