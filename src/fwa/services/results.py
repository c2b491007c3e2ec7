"""Deployment and rollback outcomes.

These records are the single source of truth a run hands back: one
DeploymentResult per host, each optionally carrying the RollbackResult
of an automatic rollback.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from fwa.core.exceptions import ExecutionError, FWAError, ValidationError
from fwa.services.backends.base import BackendKind, RestoreGranularity


class DeploymentState(str, Enum):
    """Per-host deployment state machine."""
    START = "Start"
    DETECTING = "Detecting"
    BACKING_UP = "BackingUp"
    COMPILING = "Compiling"
    APPLYING = "Applying"
    VERIFYING = "Verifying"
    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    ABORTED = "Aborted"
    UNREACHABLE = "Unreachable"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    DeploymentState.SUCCESS,
    DeploymentState.PARTIAL_FAILURE,
    DeploymentState.ABORTED,
    DeploymentState.UNREACHABLE,
})


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, (ExecutionError, ValidationError)) and exc.kind is not None:
        return f"{type(exc).__name__}:{exc.kind.value}"
    return type(exc).__name__


@dataclass(frozen=True)
class ErrorRecord:
    """One error or warning observed on a host."""
    kind: str
    message: str
    command: Optional[str] = None
    rule: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        command: Optional[str] = None,
        rule: Optional[str] = None,
    ) -> "ErrorRecord":
        message = exc.message if isinstance(exc, FWAError) else str(exc)
        if command is None and isinstance(exc, ExecutionError):
            command = exc.command
        return cls(kind=_error_kind(exc), message=message, command=command, rule=rule)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ErrorRecord":
        return cls(
            kind=d["kind"],
            message=d["message"],
            command=d.get("command"),
            rule=d.get("rule"),
        )

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of restoring a host from a backup."""
    host: str
    backend: BackendKind
    backup_key: Optional[str]
    granularity: Optional[RestoreGranularity]
    commands_run: int = 0
    commands_failed: int = 0
    verified: bool = False
    success: bool = False
    warnings: tuple[ErrorRecord, ...] = ()
    errors: tuple[ErrorRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "backend": self.backend.value,
            "backup_key": self.backup_key,
            "granularity": self.granularity.value if self.granularity else None,
            "commands_run": self.commands_run,
            "commands_failed": self.commands_failed,
            "verified": self.verified,
            "success": self.success,
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": [e.to_dict() for e in self.errors],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RollbackResult":
        granularity = d.get("granularity")
        return cls(
            host=d["host"],
            backend=BackendKind(d["backend"]),
            backup_key=d.get("backup_key"),
            granularity=RestoreGranularity(granularity) if granularity else None,
            commands_run=d.get("commands_run", 0),
            commands_failed=d.get("commands_failed", 0),
            verified=d.get("verified", False),
            success=d.get("success", False),
            warnings=tuple(ErrorRecord.from_dict(w) for w in d.get("warnings", [])),
            errors=tuple(ErrorRecord.from_dict(e) for e in d.get("errors", [])),
        )


@dataclass(frozen=True)
class DeploymentResult:
    """Outcome of one host's deployment."""
    host: str
    backend: BackendKind
    rules_attempted: int
    rules_applied: int
    rules_failed: int
    backup_ref: Optional[str]
    final_state: DeploymentState
    errors: tuple[ErrorRecord, ...] = ()
    warnings: tuple[ErrorRecord, ...] = ()
    rules_skipped: int = 0
    rollback: Optional[RollbackResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.final_state == DeploymentState.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "backend": self.backend.value,
            "final_state": self.final_state.value,
            "rules_attempted": self.rules_attempted,
            "rules_applied": self.rules_applied,
            "rules_failed": self.rules_failed,
            "rules_skipped": self.rules_skipped,
            "backup_ref": self.backup_ref,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DeploymentResult":
        started, finished = d.get("started_at"), d.get("finished_at")
        return cls(
            host=d["host"],
            backend=BackendKind(d["backend"]),
            rules_attempted=d["rules_attempted"],
            rules_applied=d["rules_applied"],
            rules_failed=d["rules_failed"],
            rules_skipped=d.get("rules_skipped", 0),
            backup_ref=d.get("backup_ref"),
            final_state=DeploymentState(d["final_state"]),
            errors=tuple(ErrorRecord.from_dict(e) for e in d.get("errors", [])),
            warnings=tuple(ErrorRecord.from_dict(w) for w in d.get("warnings", [])),
            rollback=RollbackResult.from_dict(d["rollback"]) if d.get("rollback") else None,
            started_at=datetime.fromisoformat(started) if started else None,
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )


@dataclass
class HostCheck:
    """Outcome of a verification-only probe (``fwa validate``)."""
    host: str
    backend: BackendKind = BackendKind.UNKNOWN
    reachable: bool = False
    verified: bool = False
    errors: list[ErrorRecord] = field(default_factory=list)
