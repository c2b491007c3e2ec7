"""Custom exceptions for the Firewall Automation CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from enum import Enum
from typing import Optional


class FWAError(Exception):
    """Base exception for all firewall-automation errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ValidationKind(str, Enum):
    """Why a policy failed validation."""
    DUPLICATE_PORT = "DuplicatePort"
    CONFLICTING_ACTION = "ConflictingAction"
    MALFORMED_PORT = "MalformedPort"
    MALFORMED_SOURCE = "MalformedSource"
    MALFORMED_RULE = "MalformedRule"
    UNKNOWN_ROLE = "UnknownRole"


class ExecutionKind(str, Enum):
    """How a remote command failed."""
    TIMEOUT = "Timeout"
    CHANNEL_CLOSED = "ChannelClosed"
    NON_ZERO_EXIT = "NonZeroExit"


class ConfigurationError(FWAError):
    """Configuration file or settings errors.

    Raised when:
    - Config, inventory or policy file not found or unreadable
    - Invalid YAML/JSON syntax
    - Inventory entries fail schema validation
    """
    exit_code = 2


class ValidationError(FWAError):
    """Policy validation errors.

    Raised when:
    - A port is not 1-65535 or a start-end range
    - A source is neither "any" nor an IP/CIDR
    - The same port/protocol/source is both allowed and denied in a role
    - A host references a role that does not exist
    """
    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ValidationKind] = None,
        role: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.kind = kind
        self.role = role


class UnreachableError(FWAError):
    """A session to the host could not be opened.

    Raised when:
    - SSH connection times out or is refused
    - Authentication fails (BatchMode never prompts)
    """
    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.host = host


class ExecutionError(FWAError):
    """Command execution failures.

    Raised when:
    - A remote command times out
    - The SSH channel drops while a command runs
    - A command returns non-zero and the caller asked for check=True
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        kind: ExecutionKind = ExecutionKind.NON_ZERO_EXIT,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        details = list(details or [])
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.kind = kind
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class RollbackError(FWAError):
    """Rollback operation failed.

    Raised when:
    - Restore commands fail on the host
    - The host cannot be reached to restore it
    """
    exit_code = 7


class BackupError(FWAError):
    """Snapshot or backup persistence errors.

    Raised when:
    - The backend's list-state command fails
    - The backup file cannot be written
    """
    exit_code = 12


class NotFoundError(FWAError):
    """A requested backup or report does not exist."""
    exit_code = 8


class CapabilityGapWarning(FWAError):
    """A rule cannot be expressed on the detected backend.

    Raised by an adapter's compile step; the orchestrator records it as a
    warning and skips the rule.
    """
    exit_code = 9

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.backend = backend
