"""Core framework components for Firewall Automation.

Only modules with no dependency on fwa.services are re-exported here;
import fwa.core.config and fwa.core.context directly.
"""

from fwa.core.exceptions import (
    FWAError,
    ConfigurationError,
    ValidationError,
    ValidationKind,
    UnreachableError,
    ExecutionError,
    ExecutionKind,
    RollbackError,
    BackupError,
    NotFoundError,
    CapabilityGapWarning,
)

from fwa.core.output import console, Console, Verbosity
from fwa.core.audit import AuditLogger, AuditEvent, AuditEventType, LogLevel
from fwa.core.executor import Command, CommandResult, mutating, read_only

__all__ = [
    # Exceptions
    "FWAError",
    "ConfigurationError",
    "ValidationError",
    "ValidationKind",
    "UnreachableError",
    "ExecutionError",
    "ExecutionKind",
    "RollbackError",
    "BackupError",
    "NotFoundError",
    "CapabilityGapWarning",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "LogLevel",
    # Executor
    "Command",
    "CommandResult",
    "mutating",
    "read_only",
]
