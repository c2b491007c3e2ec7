"""Firewalld adapter (service-managed backend with named zones).

Port openings are written to the permanent configuration of one zone and
activated with ``firewall-cmd --reload``. Source-restricted openings use
a rich rule. Firewalld has no per-source deny primitive at the port
level, so deny rules are reported as a capability gap and skipped.
"""

from typing import Optional, TYPE_CHECKING

from fwa.core.exceptions import CapabilityGapWarning
from fwa.core.executor import Command, CommandResult, mutating, read_only
from fwa.core.validation import source_network
from fwa.services.backends.base import DEFAULT_SSH_PORT, BackendAdapter, BackendKind
from fwa.services.policy import Rule, RuleAction

if TYPE_CHECKING:
    from fwa.services.backup_store import Backup


FIREWALL_CMD = "firewall-cmd"
DEFAULT_ZONE = "public"


def _firewalld_port(rule: Rule) -> str:
    start, end = rule.port_range
    return str(start) if start == end else f"{start}-{end}"


class FirewalldAdapter(BackendAdapter):
    """Compile allow rules into permanent firewalld zone changes."""

    kind = BackendKind.SERVICE_MANAGED

    def __init__(self, *, ssh_port: int = DEFAULT_SSH_PORT, zone: str = DEFAULT_ZONE) -> None:
        super().__init__(ssh_port=ssh_port)
        self.zone = zone

    def probe_command(self) -> Command:
        return read_only("systemctl", "is-active", "--quiet", "firewalld", elevated=False)

    def snapshot_command(self) -> Command:
        return read_only(FIREWALL_CMD, "--list-all-zones")

    def compile(self, rule: Rule) -> tuple[Command, ...]:
        if rule.action == RuleAction.DENY:
            raise CapabilityGapWarning(
                f"firewalld cannot express deny rule '{rule}': skipped",
                backend=self.kind.value,
                hint="Remove the port from the zone or use an iptables/ufw host",
            )

        port = _firewalld_port(rule)
        zone = f"--zone={self.zone}"

        network = source_network(rule.source)
        if network is None:
            change = f"--add-port={port}/{rule.protocol.value}"
        else:
            family = "ipv6" if network.version == 6 else "ipv4"
            change = (
                f'--add-rich-rule=rule family="{family}" '
                f'source address="{network}" '
                f'port port="{port}" protocol="{rule.protocol.value}" accept'
            )

        return (mutating(FIREWALL_CMD, "--permanent", zone, change, description=str(rule)),)

    def reload(self) -> Optional[Command]:
        return mutating(FIREWALL_CMD, "--reload", description="Reload firewalld")

    def verification_command(self) -> Command:
        return read_only(FIREWALL_CMD, "--state")

    def is_verified(self, result: CommandResult, baseline: Optional[str]) -> bool:
        return result.stdout.strip() == "running"

    def restore(self, backup: "Backup") -> tuple[Command, ...]:
        return (
            mutating(
                FIREWALL_CMD, "--permanent", f"--load-zone-defaults={self.zone}",
                description=f"Reset zone {self.zone} to defaults",
            ),
            mutating(FIREWALL_CMD, "--reload"),
        )
