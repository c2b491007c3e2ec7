"""Iptables adapter (low-level backend).

Rules are appended to the INPUT chain with a comment match so they can
be recognised in ``iptables-save`` output. IPv6 sources go to
ip6tables, so snapshots and verification read both tables. Verification
compares the rule count against the snapshot taken before deployment.
"""

from dataclasses import replace
from typing import Optional, TYPE_CHECKING

from fwa.core.exceptions import BackupError, ExecutionError
from fwa.core.executor import Command, CommandResult, mutating, read_only
from fwa.core.validation import source_network
from fwa.services.backends.base import KEEP_SSH_COMMENT, BackendAdapter, BackendKind
from fwa.services.policy import Rule, RuleAction

if TYPE_CHECKING:
    from fwa.services.backup_store import Backup
    from fwa.services.session import HostSession


IPTABLES = "iptables"
IP6TABLES = "ip6tables"
INPUT_CHAIN = "INPUT"

TARGETS = {
    RuleAction.ALLOW: "ACCEPT",
    RuleAction.DENY: "DROP",
}


def count_rules(saved: Optional[str]) -> int:
    """Number of appended rules in iptables-save output."""
    if not saved:
        return 0
    return sum(1 for line in saved.splitlines() if line.startswith("-A "))


def _dport(rule: Rule) -> str:
    start, end = rule.port_range
    return str(start) if start == end else f"{start}:{end}"


class IptablesAdapter(BackendAdapter):
    """Compile rules into iptables/ip6tables INPUT chain appends."""

    kind = BackendKind.IPTABLES_LIKE

    def probe_command(self) -> Command:
        return read_only("which", IPTABLES)

    def snapshot_command(self) -> Command:
        return read_only("iptables-save")

    def ipv6_snapshot_command(self) -> Command:
        return read_only("ip6tables-save")

    def _read_ipv6(self, session: "HostSession") -> str:
        """ip6tables-save output, or "" on hosts without IPv6 netfilter."""
        result = session.execute(self.ipv6_snapshot_command())
        return result.stdout if result.success else ""

    def snapshot(self, session: "HostSession") -> str:
        saved = super().snapshot(session)
        try:
            return saved + self._read_ipv6(session)
        except ExecutionError as e:
            raise BackupError(
                f"Snapshot failed on {session.host.name}: {e.message}",
                details=e.details,
            ) from e

    def compile(self, rule: Rule) -> tuple[Command, ...]:
        network = source_network(rule.source)
        binary = IP6TABLES if network is not None and network.version == 6 else IPTABLES

        # -w waits for the xtables lock instead of failing
        args = ["-w", "-A", INPUT_CHAIN, "-p", rule.protocol.value]
        if network is not None:
            args.extend(["-s", rule.source])
        args.extend(["--dport", _dport(rule), "-j", TARGETS[rule.action]])
        if rule.comment:
            args.extend(["-m", "comment", "--comment", rule.comment])

        return (mutating(binary, *args, description=str(rule)),)

    def verification_command(self) -> Command:
        return read_only("iptables-save")

    def is_verified(self, result: CommandResult, baseline: Optional[str]) -> bool:
        return count_rules(result.stdout) > count_rules(baseline)

    def verify(self, session: "HostSession", baseline: Optional[str] = None) -> bool:
        result = session.execute(self.verification_command())
        if not result.success:
            return False
        combined = replace(result, stdout=result.stdout + self._read_ipv6(session))
        return self.is_verified(combined, baseline)

    def restore(self, backup: "Backup") -> tuple[Command, ...]:
        return (
            mutating(IPTABLES, "-w", "-F", INPUT_CHAIN, description="Flush INPUT"),
            mutating(IPTABLES, "-w", "-P", INPUT_CHAIN, "ACCEPT"),
            mutating(IP6TABLES, "-w", "-F", INPUT_CHAIN, description="Flush IPv6 INPUT"),
            mutating(IP6TABLES, "-w", "-P", INPUT_CHAIN, "ACCEPT"),
            mutating(
                IPTABLES, "-w", "-A", INPUT_CHAIN,
                "-p", "tcp", "--dport", str(self.ssh_port), "-j", "ACCEPT",
                "-m", "comment", "--comment", KEEP_SSH_COMMENT,
            ),
        )
