"""Shared fixtures: an in-memory host and session, and a run context in tmp_path."""

import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from fwa.core.audit import AuditLogger
from fwa.core.config import FwaConfig, PathsConfig
from fwa.core.context import RunContext
from fwa.core.exceptions import ExecutionError, ExecutionKind, UnreachableError
from fwa.core.executor import Command, CommandResult
from fwa.core.output import Console, Verbosity
from fwa.services.backup_store import BackupStore
from fwa.services.policy import Host


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TickingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._start = start
        self._ticks = itertools.count()

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=next(self._ticks))


class FakeHost:
    """Scripted firewall host.

    Answers probes, snapshots and verification for one backend and
    applies mutating commands in order. Mutations are numbered from 1.

    Args:
        backend: "ufw", "firewalld" or "iptables"
        installed: Binaries/services present (default: just the backend)
        fail_mutations: Mutation numbers that exit non-zero
        timeout_mutations: Mutation numbers that time out
        disconnect_after: Drop the channel on the mutation after this one (fires once)
        active: Whether verification reports the firewall as enforcing
        snapshot_fails: Make the snapshot command exit non-zero
    """

    def __init__(
        self,
        backend: str = "ufw",
        *,
        installed: Optional[set[str]] = None,
        fail_mutations: tuple[int, ...] = (),
        timeout_mutations: tuple[int, ...] = (),
        disconnect_after: Optional[int] = None,
        active: bool = True,
        snapshot_fails: bool = False,
    ) -> None:
        self.backend = backend
        self.installed = installed if installed is not None else {backend}
        self.fail_mutations = fail_mutations
        self.timeout_mutations = timeout_mutations
        self.disconnect_after = disconnect_after
        self.active = active
        self.snapshot_fails = snapshot_fails

        self.mutations = 0
        self.applied: list[Command] = []
        self.attempted: list[Command] = []
        self._lock = threading.Lock()

    def __call__(self, command: Command):
        if command.mutating:
            with self._lock:
                return self._mutate(command)
        return self._read(command)

    def _mutate(self, command: Command):
        self.mutations += 1
        n = self.mutations
        if self.disconnect_after is not None and n > self.disconnect_after:
            self.disconnect_after = None
            return ExecutionError(
                "Connection lost",
                kind=ExecutionKind.CHANNEL_CLOSED,
                command=command.display(),
            )
        self.attempted.append(command)
        if n in self.timeout_mutations:
            return ExecutionError(
                f"Command timed out: {command.display()}",
                kind=ExecutionKind.TIMEOUT,
                command=command.display(),
            )
        if n in self.fail_mutations:
            return 1, "", "ERROR: Bad rule"
        self.applied.append(command)
        return 0, "", ""

    def _read(self, command: Command):
        argv = (command.binary, *command.argv)

        if argv[0] == "which":
            present = argv[1] in self.installed
            return (0, f"/usr/sbin/{argv[1]}\n", "") if present else (1, "", "")
        if argv[:2] == ("systemctl", "is-active"):
            return (0, "", "") if "firewalld" in self.installed else (3, "", "")

        if self.snapshot_fails and argv in (
            ("ufw", "status", "verbose"),
            ("firewall-cmd", "--list-all-zones"),
            ("iptables-save",),
        ):
            return 1, "", "permission denied"

        if argv == ("ufw", "status", "verbose"):
            return 0, "Status: active\nDefault: deny (incoming)\n", ""
        if argv == ("ufw", "status"):
            return 0, "Status: active\n" if self.active else "Status: inactive\n", ""
        if argv == ("firewall-cmd", "--list-all-zones"):
            return 0, "public (active)\n  target: default\n", ""
        if argv == ("firewall-cmd", "--state"):
            return (0, "running\n", "") if self.active else (252, "not running\n", "")
        if argv in (("iptables-save",), ("ip6tables-save",)):
            family = argv[0].removesuffix("-save")
            lines = ["*filter", ":INPUT ACCEPT [0:0]"]
            if self.active:
                lines += [f"-A INPUT {c.display()}" for c in self.applied if c.binary == family]
            lines.append("COMMIT")
            return 0, "\n".join(lines) + "\n", ""
        return 127, "", f"{argv[0]}: command not found"


class FakeSession:
    """In-memory stand-in for HostSession."""

    def __init__(self, host: Host, responder: FakeHost, dry_run: bool = False) -> None:
        self.host = host
        self.responder = responder
        self.dry_run = dry_run
        self.executed: list[Command] = []
        self.closed = False
        self._dead = False

    def execute(self, command: Command, timeout=None, *, check: bool = False) -> CommandResult:
        if self._dead:
            raise ExecutionError(
                f"Session to {self.host.name} is closed",
                kind=ExecutionKind.CHANNEL_CLOSED,
                command=command.display(),
            )
        self.executed.append(command)
        if self.dry_run and command.mutating:
            return CommandResult(command=command, return_code=0, stdout="", stderr="", dry_run=True)

        outcome = self.responder(command)
        if isinstance(outcome, ExecutionError):
            if outcome.kind == ExecutionKind.CHANNEL_CLOSED:
                self._dead = True
            raise outcome

        rc, out, err = outcome
        result = CommandResult(command=command, return_code=rc, stdout=out, stderr=err)
        if check:
            result.check()
        return result

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def mutations(self) -> list[Command]:
        return [c for c in self.executed if c.mutating]


class FakeSessionFactory:
    """Opens FakeSessions; hosts without a FakeHost are unreachable."""

    def __init__(self, hosts: Optional[dict[str, FakeHost]] = None, dry_run: bool = False) -> None:
        self.hosts = hosts or {}
        self.dry_run = dry_run
        self.sessions: list[FakeSession] = []
        self._lock = threading.Lock()

    def __call__(self, host: Host) -> FakeSession:
        responder = self.hosts.get(host.name)
        if responder is None:
            raise UnreachableError(f"Cannot connect to {host}", host=host.name)
        session = FakeSession(host, responder, dry_run=self.dry_run)
        with self._lock:
            self.sessions.append(session)
        return session

    def sessions_for(self, name: str) -> list[FakeSession]:
        return [s for s in self.sessions if s.host.name == name]


def make_host(name: str = "web-1", role: str = "web", user: str = "admin") -> Host:
    return Host(name=name, address="192.0.2.10", user=user, role=role)


@pytest.fixture
def quiet_console():
    console = Console()
    console.configure(verbosity=Verbosity.QUIET)
    return console


@pytest.fixture
def run_context(tmp_path, quiet_console):
    """RunContext writing logs, backups and reports under tmp_path."""
    config = FwaConfig(paths=PathsConfig(
        inventory=tmp_path / "config" / "servers.yaml",
        policy=tmp_path / "config" / "policy.yaml",
        backup_dir=tmp_path / "backups",
        log_path=tmp_path / "logs" / "fwa.log",
        report_dir=tmp_path / "reports",
    ))
    ctx = RunContext(
        config=config,
        audit=AuditLogger(log_path=config.paths.log_path, console=quiet_console),
        backups=BackupStore(config.paths.backup_dir),
        console=quiet_console,
        clock=TickingClock(),
    )
    yield ctx
    ctx.close()


@pytest.fixture
def web_policy_raw():
    return {
        "web": {
            "allow": [{"port": "80", "protocol": "tcp", "source": "any"}],
            "deny": [{"port": "3306", "protocol": "tcp", "source": "any"}],
        }
    }
