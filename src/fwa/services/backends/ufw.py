"""UFW adapter (simple allow/deny backend).

UFW applies every rule immediately, so there is no reload step. It has
no bulk-restore primitive either: rollback resets the host to
default-deny with SSH kept open, and the backup only documents what the
host looked like before.
"""

from typing import Optional, TYPE_CHECKING

from fwa.core.executor import Command, CommandResult, mutating, read_only
from fwa.services.backends.base import (
    KEEP_SSH_COMMENT,
    BackendAdapter,
    BackendKind,
    RestoreGranularity,
)
from fwa.services.policy import Rule

if TYPE_CHECKING:
    from fwa.services.backup_store import Backup


UFW = "ufw"
ACTIVE_MARKER = "Status: active"


def _ufw_port(rule: Rule) -> str:
    start, end = rule.port_range
    return str(start) if start == end else f"{start}:{end}"


class UfwAdapter(BackendAdapter):
    """Compile rules into ufw allow/deny commands."""

    kind = BackendKind.SIMPLE_ALLOW_DENY
    restore_granularity = RestoreGranularity.ADVISORY

    def probe_command(self) -> Command:
        return read_only("which", UFW)

    def snapshot_command(self) -> Command:
        return read_only(UFW, "status", "verbose")

    def compile(self, rule: Rule) -> tuple[Command, ...]:
        verb = rule.action.value
        port = _ufw_port(rule)

        if rule.any_source:
            args = [verb, f"{port}/{rule.protocol.value}"]
        else:
            args = [
                verb,
                "from", rule.source,
                "to", "any",
                "port", port,
                "proto", rule.protocol.value,
            ]

        if rule.comment:
            args.extend(["comment", rule.comment])

        return (mutating(UFW, *args, description=str(rule)),)

    def verification_command(self) -> Command:
        return read_only(UFW, "status")

    def is_verified(self, result: CommandResult, baseline: Optional[str]) -> bool:
        return ACTIVE_MARKER in result.stdout

    def restore(self, backup: "Backup") -> tuple[Command, ...]:
        return (
            mutating(UFW, "--force", "reset", description="Reset ufw"),
            mutating(UFW, "default", "deny", "incoming"),
            mutating(UFW, "default", "allow", "outgoing"),
            mutating(UFW, "allow", f"{self.ssh_port}/tcp", "comment", KEEP_SSH_COMMENT),
            mutating(UFW, "--force", "enable"),
        )

    def restore_warnings(self, backup: "Backup") -> list[str]:
        return [
            "ufw has no bulk-restore primitive: host was reset to default-deny "
            f"with SSH ({self.ssh_port}/tcp) allowed; backup {backup.key} is "
            "advisory only and was not re-applied"
        ]
