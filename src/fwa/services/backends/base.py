"""Backend adapter interface.

One adapter per firewall technology. An adapter knows how to detect its
backend on a host, snapshot the current state, compile a policy rule
into backend commands, make compiled changes take effect, verify the
result and build the commands that reset the host after a failure.

Everything except ``probe``, ``snapshot`` and ``verify`` is a pure
function of its arguments.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Optional

from fwa.core.exceptions import BackupError, ExecutionError
from fwa.core.executor import Command, CommandResult
from fwa.services.policy import Rule

if TYPE_CHECKING:
    from fwa.services.backup_store import Backup
    from fwa.services.session import HostSession


DEFAULT_SSH_PORT = 22
KEEP_SSH_COMMENT = "fwa: keep SSH reachable"


class BackendKind(str, Enum):
    """Firewall technology active on a host."""
    IPTABLES_LIKE = "iptables"
    SERVICE_MANAGED = "firewalld"
    SIMPLE_ALLOW_DENY = "ufw"
    UNKNOWN = "unknown"


class RestoreGranularity(str, Enum):
    """How faithfully a backend can be rolled back."""
    FULL_RESET = "full-reset"
    ADVISORY = "advisory"


class BackendAdapter(ABC):
    """Capability interface implemented once per BackendKind."""

    kind: ClassVar[BackendKind]
    restore_granularity: ClassVar[RestoreGranularity] = RestoreGranularity.FULL_RESET

    def __init__(self, *, ssh_port: int = DEFAULT_SSH_PORT) -> None:
        """Initialize adapter.

        Args:
            ssh_port: Port kept open whenever the adapter resets a host
        """
        self.ssh_port = ssh_port

    # =========================================================================
    # Detection and state capture (read-only)
    # =========================================================================

    @abstractmethod
    def probe_command(self) -> Command:
        """Read-only command that succeeds when the backend is present."""

    def probe(self, session: "HostSession") -> bool:
        """Check whether this backend is present on the host."""
        result = session.execute(self.probe_command())
        return result.success

    @abstractmethod
    def snapshot_command(self) -> Command:
        """Read-only command that lists the current firewall state."""

    def snapshot(self, session: "HostSession") -> str:
        """Capture the current firewall state.

        Raises:
            BackupError: If the list command fails or the channel drops
        """
        command = self.snapshot_command()
        try:
            result = session.execute(command)
        except ExecutionError as e:
            raise BackupError(
                f"Snapshot failed on {session.host.name}: {e.message}",
                details=e.details,
            ) from e

        if not result.success:
            raise BackupError(
                f"Snapshot command failed on {session.host.name}: {command.display()}",
                details=[f"Exit code: {result.return_code}", result.stderr.strip()],
            )
        return result.stdout

    # =========================================================================
    # Compilation (pure)
    # =========================================================================

    @abstractmethod
    def compile(self, rule: Rule) -> tuple[Command, ...]:
        """Translate one rule into backend commands.

        Raises:
            CapabilityGapWarning: If the rule cannot be expressed
        """

    def reload(self) -> Optional[Command]:
        """Command that makes compiled changes take effect, if any."""
        return None

    # =========================================================================
    # Verification
    # =========================================================================

    @abstractmethod
    def verification_command(self) -> Command:
        """Read-only command whose output shows the backend is enforcing."""

    @abstractmethod
    def is_verified(self, result: CommandResult, baseline: Optional[str]) -> bool:
        """Interpret the verification command's result."""

    def verify(self, session: "HostSession", baseline: Optional[str] = None) -> bool:
        """Run the verification probe.

        Args:
            session: Open host session
            baseline: Snapshot taken before deployment, if any
        """
        result = session.execute(self.verification_command())
        return result.success and self.is_verified(result, baseline)

    # =========================================================================
    # Rollback
    # =========================================================================

    @abstractmethod
    def restore(self, backup: "Backup") -> tuple[Command, ...]:
        """Commands that return the host to a known state."""

    def restore_warnings(self, backup: "Backup") -> list[str]:
        """Caveats an operator must see about this backend's rollback."""
        return []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value})"
