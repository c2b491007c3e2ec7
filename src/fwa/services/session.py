"""Remote host sessions over SSH.

A HostSession owns the channel to one host. It opens a multiplexed
OpenSSH master connection, runs structured commands through it and
reports each result as exit status plus captured output.

Every argument of a command is quoted individually before it is handed
to the remote login shell, so rule sources and comments are never
re-parsed as shell syntax.
"""

import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from fwa.core.audit import AuditEventType, AuditLogger
from fwa.core.exceptions import ExecutionError, ExecutionKind, UnreachableError
from fwa.core.executor import Command, CommandResult
from fwa.services.policy import Host


DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_COMMAND_TIMEOUT = 60

# ssh exits with 255 when the connection itself fails
SSH_ERROR_EXIT = 255

# Keep remote output in the C locale so backend status text parses reliably
REMOTE_ENV = ("env", "LC_ALL=C")


def resolve_identity(credential_ref: str, key_dir: Optional[Path] = None) -> Optional[Path]:
    """Map a host's credential reference to an SSH identity file.

    Args:
        credential_ref: "" (use ssh-agent/defaults), an absolute or ~ path,
            or a file name relative to ``key_dir``
        key_dir: Directory holding named keys

    Returns:
        Path to the identity file, or None to use ssh defaults
    """
    if not credential_ref:
        return None

    path = Path(credential_ref).expanduser()
    if not path.is_absolute() and key_dir is not None:
        path = key_dir.expanduser() / path
    return path


class HostSession:
    """Command channel to a single host.

    Usage:
        with HostSession.connect(host, timeout=10) as session:
            result = session.execute(command)
    """

    def __init__(
        self,
        host: Host,
        *,
        audit: Optional[AuditLogger] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        identity_file: Optional[Path] = None,
        known_hosts_file: Optional[Path] = None,
        use_sudo: bool = True,
        dry_run: bool = False,
        multiplex: bool = True,
    ) -> None:
        """Initialize session (does not connect).

        Args:
            host: Target host
            audit: Log sink for commands and results
            connect_timeout: Seconds allowed to establish the connection
            command_timeout: Default seconds allowed per command
            identity_file: SSH private key
            known_hosts_file: Alternative known_hosts file
            use_sudo: Prefix privileged commands with sudo -n (non-root users)
            dry_run: Log mutating commands instead of running them
            multiplex: Reuse one SSH master connection for all commands
        """
        self.host = host
        self.audit = audit
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.identity_file = identity_file
        self.known_hosts_file = known_hosts_file
        self.use_sudo = use_sudo
        self.dry_run = dry_run
        self.multiplex = multiplex

        self._control_dir: Optional[Path] = None
        self._connected = False

    @classmethod
    def connect(cls, host: Host, timeout: float = DEFAULT_CONNECT_TIMEOUT, **kwargs) -> "HostSession":
        """Open a session to ``host``.

        Raises:
            UnreachableError: If the host cannot be reached or authenticated
        """
        session = cls(host, connect_timeout=timeout, **kwargs)
        session.open()
        return session

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def _ssh_base(self) -> list[str]:
        args = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(self.connect_timeout)}",
            "-o", "ServerAliveInterval=15",
            "-o", "ServerAliveCountMax=3",
            "-p", str(self.host.port),
        ]
        if self.identity_file is not None:
            args.extend(["-i", str(self.identity_file), "-o", "IdentitiesOnly=yes"])
        if self.known_hosts_file is not None:
            args.extend(["-o", f"UserKnownHostsFile={self.known_hosts_file}"])
        if self._control_dir is not None:
            args.extend([
                "-o", "ControlMaster=auto",
                "-o", f"ControlPath={self._control_dir / '%C'}",
                "-o", "ControlPersist=120",
            ])
        args.append(f"{self.host.user}@{self.host.address}")
        return args

    def open(self) -> None:
        """Establish the connection.

        Raises:
            UnreachableError: If ssh cannot connect within the timeout
        """
        if self.identity_file is not None and not self.identity_file.exists():
            raise UnreachableError(
                f"Identity file for {self.host.name} not found: {self.identity_file}",
                host=self.host.name,
                hint="Check the host's credential_ref or FWA_SSH_KEY_DIR",
            )

        if self.multiplex:
            self._control_dir = Path(tempfile.mkdtemp(prefix="fwa-ssh-"))

        probe = self._ssh_base() + ["--", "true"]
        try:
            result = subprocess.run(
                probe,
                capture_output=True,
                text=True,
                timeout=self.connect_timeout + 5,
            )
        except subprocess.TimeoutExpired:
            self._cleanup_control_dir()
            raise UnreachableError(
                f"Connection to {self.host} timed out after {self.connect_timeout}s",
                host=self.host.name,
            )
        except OSError as e:
            self._cleanup_control_dir()
            raise UnreachableError(
                f"Cannot run ssh for {self.host}: {e}",
                host=self.host.name,
                hint="Install the OpenSSH client",
            ) from e

        if result.returncode != 0:
            self._cleanup_control_dir()
            raise UnreachableError(
                f"Cannot connect to {self.host}",
                host=self.host.name,
                hint=f"Verify SSH access: ssh -p {self.host.port} {self.host.user}@{self.host.address}",
                details=[result.stderr.strip()] if result.stderr.strip() else None,
            )

        self._connected = True
        self._log_debug(f"Connected to {self.host.user}@{self.host.address}:{self.host.port}")

    def close(self) -> None:
        """Tear down the master connection."""
        if self._control_dir is not None and self._connected:
            try:
                subprocess.run(
                    self._ssh_base()[:-1] + ["-O", "exit", f"{self.host.user}@{self.host.address}"],
                    capture_output=True,
                    text=True,
                    timeout=self.connect_timeout,
                )
            except (subprocess.TimeoutExpired, OSError) as e:
                self._log_debug(f"Closing SSH master failed: {e}")
        self._connected = False
        self._cleanup_control_dir()

    def _cleanup_control_dir(self) -> None:
        if self._control_dir is not None:
            shutil.rmtree(self._control_dir, ignore_errors=True)
            self._control_dir = None

    def __enter__(self) -> "HostSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._connected

    # =========================================================================
    # Command execution
    # =========================================================================

    def remote_argv(self, command: Command) -> list[str]:
        """Argument vector run on the host (sudo, C locale, command)."""
        elevate = self.use_sudo and not self.host.is_root and command.needs_elevated_privilege
        prefix = ["sudo", "-n"] if elevate else []
        return [*prefix, *REMOTE_ENV, command.binary, *command.argv]

    def execute(
        self,
        command: Command,
        timeout: Optional[float] = None,
        *,
        check: bool = False,
    ) -> CommandResult:
        """Run a command on the host.

        Args:
            command: Structured command
            timeout: Seconds allowed (default: session command timeout)
            check: Raise ExecutionError(NON_ZERO_EXIT) on non-zero exit

        Returns:
            CommandResult; a non-zero exit is a result, not an error

        Raises:
            ExecutionError: TIMEOUT or CHANNEL_CLOSED
        """
        timeout = timeout or self.command_timeout
        display = command.display()

        if command.mutating:
            # Logged before it runs so a failure still leaves a record
            self._log_command(command)
        else:
            self._log_debug(f"Running: {display}")

        if self.dry_run and command.mutating:
            return CommandResult(command=command, return_code=0, stdout="", stderr="", dry_run=True)

        if not self._connected:
            raise ExecutionError(
                f"Session to {self.host.name} is closed",
                kind=ExecutionKind.CHANNEL_CLOSED,
                command=display,
            )

        remote = shlex.join(self.remote_argv(command))
        try:
            proc = subprocess.run(
                self._ssh_base() + ["--", remote],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {display}",
                kind=ExecutionKind.TIMEOUT,
                command=display,
            )
        except OSError as e:
            self._connected = False
            raise ExecutionError(
                f"Cannot run ssh: {e}",
                kind=ExecutionKind.CHANNEL_CLOSED,
                command=display,
            ) from e

        if proc.returncode == SSH_ERROR_EXIT:
            self._connected = False
            raise ExecutionError(
                f"Connection to {self.host.name} lost while running: {display}",
                kind=ExecutionKind.CHANNEL_CLOSED,
                command=display,
                stderr=proc.stderr.strip() or None,
            )

        result = CommandResult(
            command=command,
            return_code=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
        if self.audit is not None:
            self.audit.debug(
                self.host.name,
                f"Exit {result.return_code}: {display}",
                event=AuditEventType.COMMAND_RESULT,
                command=display,
                exit_code=result.return_code,
                stderr=result.stderr.strip()[:500],
            )

        if check:
            result.check()
        return result

    def _log_command(self, command: Command) -> None:
        if self.audit is None:
            return
        display = command.display()
        if self.dry_run:
            self.audit.console.dry_run_msg(f"Run: {display}", host=self.host.name)
        self.audit.info(
            self.host.name,
            f"{'[dry-run] ' if self.dry_run else ''}Executing: {display}",
            event=AuditEventType.COMMAND,
            echo=not self.dry_run,
            command=display,
            argv=list(self.remote_argv(command)),
            dry_run=self.dry_run,
        )

    def _log_debug(self, message: str) -> None:
        if self.audit is not None:
            self.audit.debug(self.host.name, message)
