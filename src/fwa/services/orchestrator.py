"""Per-host deployment state machine.

Drives one host through:

    Start -> Detecting -> BackingUp -> Compiling -> Applying -> Verifying
          -> Success | PartialFailure

with the side exits Unreachable (session could not be opened) and
Aborted (no backend, backup failed, channel lost or run cancelled).

A backup is always persisted before the first mutating command runs. Once
mutation has started, losing the channel or cancelling the run triggers an
automatic rollback from that backup over a fresh session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from fwa.core.audit import AuditEventType, LogLevel
from fwa.core.context import RunContext
from fwa.core.exceptions import (
    BackupError,
    CapabilityGapWarning,
    ExecutionError,
    ExecutionKind,
    RollbackError,
    UnreachableError,
)
from fwa.core.executor import Command
from fwa.services.backends import BackendAdapter, build_adapters, detect_backend
from fwa.services.backends.base import BackendKind
from fwa.services.backup_store import Backup
from fwa.services.policy import Host, Role, Rule
from fwa.services.results import (
    DeploymentResult,
    DeploymentState,
    ErrorRecord,
    HostCheck,
    RollbackResult,
)
from fwa.services.session import HostSession, resolve_identity


SessionFactory = Callable[[Host], HostSession]


class _RunCancelled(Exception):
    """Raised inside a host task when the run was cancelled mid-apply."""


@dataclass
class _HostRun:
    """Mutable tally for one host while its deployment is in flight."""
    host: Host
    started_at: datetime
    state: DeploymentState = DeploymentState.START
    backend: BackendKind = BackendKind.UNKNOWN
    backup: Optional[Backup] = None
    rules_attempted: int = 0
    rules_applied: int = 0
    rules_failed: int = 0
    rules_skipped: int = 0
    commands_failed: int = 0
    commands_sent: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)
    warnings: list[ErrorRecord] = field(default_factory=list)
    rollback: Optional[RollbackResult] = None

    def finish(self, state: DeploymentState, finished_at: datetime) -> DeploymentResult:
        return DeploymentResult(
            host=self.host.name,
            backend=self.backend,
            rules_attempted=self.rules_attempted,
            rules_applied=self.rules_applied,
            rules_failed=self.rules_failed,
            rules_skipped=self.rules_skipped,
            backup_ref=self.backup.key if self.backup else None,
            final_state=state,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            rollback=self.rollback,
            started_at=self.started_at,
            finished_at=finished_at,
        )


class DeploymentOrchestrator:
    """Deploys a role's rules to a host, one host per call.

    Instances hold no per-host state, so one orchestrator can serve many
    concurrent host tasks.
    """

    def __init__(
        self,
        ctx: RunContext,
        *,
        session_factory: Optional[SessionFactory] = None,
        adapters: Optional[dict[BackendKind, BackendAdapter]] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            ctx: Run context (log sink, backup sink, clock, settings)
            session_factory: Opens a session to a host (default: SSH)
            adapters: Backend adapters by kind (default: all built-in)
        """
        self.ctx = ctx
        self.session_factory = session_factory or self._connect
        self.adapters = adapters or build_adapters(
            ssh_port=ctx.deploy.keep_ssh_port,
            firewalld_zone=ctx.deploy.firewalld_zone,
        )

    def _connect(self, host: Host) -> HostSession:
        settings = self.ctx.deploy
        return HostSession.connect(
            host,
            timeout=settings.connect_timeout,
            audit=self.ctx.audit,
            command_timeout=settings.command_timeout,
            identity_file=resolve_identity(host.credential_ref, self.ctx.secrets.fwa_ssh_key_dir),
            known_hosts_file=self.ctx.secrets.fwa_ssh_known_hosts,
            use_sudo=settings.use_sudo,
            dry_run=self.ctx.dry_run,
        )

    # =========================================================================
    # Deploy
    # =========================================================================

    def deploy(self, host: Host, role: Role) -> DeploymentResult:
        """Deploy ``role`` to ``host``.

        Never raises for host-level failures: every outcome, including an
        unreachable host, is reported in the returned DeploymentResult.
        """
        run = _HostRun(host=host, started_at=self.ctx.clock())
        self._log_state(run, DeploymentState.START, role=role.name, rules=len(role))

        try:
            session = self.session_factory(host)
        except UnreachableError as e:
            run.errors.append(ErrorRecord.from_exception(e))
            return self._finish(run, DeploymentState.UNREACHABLE)

        try:
            return self._deploy_on(session, run, role)
        finally:
            session.close()

    def _deploy_on(self, session: HostSession, run: _HostRun, role: Role) -> DeploymentResult:
        # Detecting
        self._log_state(run, DeploymentState.DETECTING)
        try:
            adapter = detect_backend(session, self.adapters)
        except ExecutionError as e:
            run.errors.append(ErrorRecord.from_exception(e))
            return self._finish(run, DeploymentState.ABORTED)

        if adapter is None:
            run.errors.append(ErrorRecord(
                kind="NoBackend",
                message="No supported firewall backend detected (firewalld, ufw, iptables)",
            ))
            return self._finish(run, DeploymentState.ABORTED)
        run.backend = adapter.kind
        self.ctx.audit.info(run.host.name, f"Detected backend: {adapter.kind.value}", echo=False)

        # BackingUp
        self._log_state(run, DeploymentState.BACKING_UP)
        try:
            run.backup = self._take_backup(session, adapter)
        except BackupError as e:
            run.errors.append(ErrorRecord.from_exception(e))
            return self._finish(run, DeploymentState.ABORTED)

        # Compiling
        self._log_state(run, DeploymentState.COMPILING)
        plan = self._compile(adapter, role, run)

        # Applying
        self._log_state(run, DeploymentState.APPLYING)
        try:
            self._apply(session, adapter, plan, run)
            self._log_state(run, DeploymentState.VERIFYING)
            verified = self._verify(session, adapter, run)
        except _RunCancelled:
            if run.commands_sent == 0:
                run.errors.append(ErrorRecord(kind="Cancelled", message="Run cancelled before apply"))
                return self._finish(run, DeploymentState.ABORTED)
            run.errors.append(ErrorRecord(kind="Cancelled", message="Run cancelled during apply"))
            run.rollback = self.rollback(run.host, run.backup)
            return self._finish(run, DeploymentState.ABORTED)
        except ExecutionError as e:
            if e.kind != ExecutionKind.CHANNEL_CLOSED:
                raise
            run.errors.append(ErrorRecord.from_exception(e))
            run.rollback = self.rollback(run.host, run.backup)
            return self._finish(run, DeploymentState.ABORTED)

        if run.rules_failed == 0 and run.commands_failed == 0 and verified:
            return self._finish(run, DeploymentState.SUCCESS)
        return self._finish(run, DeploymentState.PARTIAL_FAILURE)

    def _take_backup(self, session: HostSession, adapter: BackendAdapter) -> Backup:
        snapshot = adapter.snapshot(session)
        backup = Backup.create(
            session.host.name,
            adapter.kind,
            snapshot,
            timestamp=self.ctx.clock(),
        )

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Would save backup {backup.key}", host=session.host.name)
            return backup

        self.ctx.backups.save(backup)
        self.ctx.audit.info(
            session.host.name,
            f"Backup saved: {backup.key}",
            event=AuditEventType.BACKUP_CREATE,
            backup_key=backup.key,
            backend=adapter.kind.value,
        )
        return backup

    def _compile(
        self,
        adapter: BackendAdapter,
        role: Role,
        run: _HostRun,
    ) -> list[tuple[Rule, tuple[Command, ...]]]:
        plan = []
        for rule in role.ordered_rules():
            try:
                commands = adapter.compile(rule)
            except CapabilityGapWarning as e:
                run.rules_skipped += 1
                run.warnings.append(ErrorRecord.from_exception(e, rule=str(rule)))
                self.ctx.audit.warning(run.host.name, f"Skipped rule: {e.message}", rule=str(rule))
                continue
            plan.append((rule, commands))
        run.rules_attempted = len(plan)
        return plan

    def _apply(
        self,
        session: HostSession,
        adapter: BackendAdapter,
        plan: list[tuple[Rule, tuple[Command, ...]]],
        run: _HostRun,
    ) -> None:
        for rule, commands in plan:
            rule_ok = True
            for command in commands:
                if not self._run_command(session, command, run, rule=rule):
                    rule_ok = False
            if rule_ok:
                run.rules_applied += 1
            else:
                run.rules_failed += 1

        reload = adapter.reload()
        if reload is not None:
            self._run_command(session, reload, run)

    def _run_command(
        self,
        session: HostSession,
        command: Command,
        run: _HostRun,
        rule: Optional[Rule] = None,
    ) -> bool:
        """Run one mutating command; True if it succeeded.

        Raises:
            _RunCancelled: If the run was cancelled before the command
            ExecutionError: CHANNEL_CLOSED only
        """
        if self.ctx.cancelled:
            raise _RunCancelled()

        rule_text = str(rule) if rule is not None else None
        run.commands_sent += 1
        try:
            result = session.execute(command)
        except ExecutionError as e:
            if e.kind != ExecutionKind.TIMEOUT:
                raise
            run.commands_failed += 1
            run.errors.append(ErrorRecord.from_exception(e, rule=rule_text))
            self.ctx.audit.error(run.host.name, e.message, command=command.display())
            return False

        if result.success:
            return True

        run.commands_failed += 1
        stderr = result.stderr.strip()
        run.errors.append(ErrorRecord(
            kind=f"ExecutionError:{ExecutionKind.NON_ZERO_EXIT.value}",
            message=f"Exit {result.return_code}" + (f": {stderr}" if stderr else ""),
            command=command.display(),
            rule=rule_text,
        ))
        self.ctx.audit.error(
            run.host.name,
            f"Command failed (exit {result.return_code}): {command.display()}",
            command=command.display(),
            exit_code=result.return_code,
        )
        return False

    def _verify(self, session: HostSession, adapter: BackendAdapter, run: _HostRun) -> bool:
        if self.ctx.dry_run:
            run.warnings.append(ErrorRecord(kind="DryRun", message="Verification skipped in dry-run"))
            return True

        try:
            verified = adapter.verify(session, run.backup.raw_snapshot if run.backup else None)
        except ExecutionError as e:
            if e.kind == ExecutionKind.CHANNEL_CLOSED:
                raise
            run.errors.append(ErrorRecord.from_exception(e))
            return False

        if not verified:
            run.errors.append(ErrorRecord(
                kind="VerificationFailed",
                message=f"{adapter.kind.value} is not enforcing the deployed rules",
                command=adapter.verification_command().display(),
            ))
        return verified

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(self, host: Host, backup: Backup) -> RollbackResult:
        """Restore ``host`` from ``backup`` over a fresh session.

        The backend is re-detected on the host; a mismatch with the backend
        recorded in the backup is reported as a warning.
        """
        warnings: list[ErrorRecord] = []
        errors: list[ErrorRecord] = []
        self.ctx.audit.warning(
            host.name,
            f"Rolling back from backup {backup.key}",
            event=AuditEventType.ROLLBACK,
            backup_key=backup.key,
        )

        try:
            session = self.session_factory(host)
        except UnreachableError as e:
            errors.append(ErrorRecord.from_exception(e))
            return self._rollback_result(host, backup, None, 0, 0, False, warnings, errors)

        try:
            try:
                adapter = detect_backend(session, self.adapters)
            except ExecutionError as e:
                errors.append(ErrorRecord.from_exception(e))
                return self._rollback_result(host, backup, None, 0, 0, False, warnings, errors)

            if adapter is None:
                errors.append(ErrorRecord(kind="NoBackend", message="No supported firewall backend detected"))
                return self._rollback_result(host, backup, None, 0, 0, False, warnings, errors)

            if adapter.kind != backup.backend:
                warnings.append(ErrorRecord(
                    kind="BackendMismatch",
                    message=(
                        f"Backup was taken with {backup.backend.value} but host now runs "
                        f"{adapter.kind.value}; restoring with {adapter.kind.value}"
                    ),
                ))
            for text in adapter.restore_warnings(backup):
                warnings.append(ErrorRecord(kind="RestoreAdvisory", message=text))

            run = failed = 0
            channel_lost = False
            for command in adapter.restore(backup):
                run += 1
                try:
                    result = session.execute(command)
                except ExecutionError as e:
                    failed += 1
                    errors.append(ErrorRecord.from_exception(e))
                    if e.kind == ExecutionKind.CHANNEL_CLOSED:
                        channel_lost = True
                        break
                    continue
                if not result.success:
                    failed += 1
                    errors.append(ErrorRecord(
                        kind=f"ExecutionError:{ExecutionKind.NON_ZERO_EXIT.value}",
                        message=f"Exit {result.return_code}: {result.stderr.strip()}",
                        command=command.display(),
                    ))

            verified = False
            if not channel_lost:
                try:
                    verified = self.ctx.dry_run or adapter.verify(session, None)
                except ExecutionError as e:
                    errors.append(ErrorRecord.from_exception(e))

            return self._rollback_result(host, backup, adapter, run, failed, verified, warnings, errors)
        finally:
            session.close()

    def _rollback_result(
        self,
        host: Host,
        backup: Backup,
        adapter: Optional[BackendAdapter],
        commands_run: int,
        commands_failed: int,
        verified: bool,
        warnings: list[ErrorRecord],
        errors: list[ErrorRecord],
    ) -> RollbackResult:
        success = adapter is not None and commands_failed == 0 and verified

        for warning in warnings:
            self.ctx.audit.warning(host.name, warning.message, event=AuditEventType.ROLLBACK)

        if success:
            self.ctx.audit.info(
                host.name,
                f"Rollback from {backup.key} complete",
                event=AuditEventType.ROLLBACK,
                backup_key=backup.key,
                success=True,
            )
        else:
            failure = RollbackError(
                f"Rollback of {host.name} from {backup.key} did not complete",
                hint=f"Inspect the host manually; the backup is kept at {backup.key}",
            )
            errors = [*errors, ErrorRecord.from_exception(failure)]
            self.ctx.audit.error(
                host.name,
                failure.message,
                event=AuditEventType.ROLLBACK,
                backup_key=backup.key,
                success=False,
                errors=[str(e) for e in errors],
            )

        return RollbackResult(
            host=host.name,
            backend=adapter.kind if adapter else BackendKind.UNKNOWN,
            backup_key=backup.key,
            granularity=adapter.restore_granularity if adapter else None,
            commands_run=commands_run,
            commands_failed=commands_failed,
            verified=verified,
            success=success,
            warnings=tuple(warnings),
            errors=tuple(errors),
        )

    # =========================================================================
    # Read-only and backup-only operations
    # =========================================================================

    def verify_host(self, host: Host) -> HostCheck:
        """Detect the backend on ``host`` and run its verification probe."""
        check = HostCheck(host=host.name)
        try:
            session = self.session_factory(host)
        except UnreachableError as e:
            check.errors.append(ErrorRecord.from_exception(e))
            return check

        check.reachable = True
        try:
            adapter = detect_backend(session, self.adapters)
            if adapter is None:
                check.errors.append(ErrorRecord(kind="NoBackend", message="No supported firewall backend detected"))
                return check
            check.backend = adapter.kind
            check.verified = adapter.verify(session, None)
        except ExecutionError as e:
            check.errors.append(ErrorRecord.from_exception(e))
        finally:
            session.close()
        return check

    def backup_host(self, host: Host) -> Backup:
        """Snapshot ``host`` and persist the backup.

        Raises:
            UnreachableError: If the host cannot be reached
            BackupError: If no backend is found or the snapshot fails
        """
        with self.session_factory(host) as session:
            try:
                adapter = detect_backend(session, self.adapters)
            except ExecutionError as e:
                raise BackupError(f"Cannot detect backend on {host.name}: {e.message}") from e
            if adapter is None:
                raise BackupError(
                    f"No supported firewall backend on {host.name}",
                    hint="Install and enable firewalld, ufw or iptables",
                )
            return self._take_backup(session, adapter)

    # =========================================================================
    # State logging
    # =========================================================================

    def _log_state(self, run: _HostRun, state: DeploymentState, **fields) -> None:
        previous = run.state
        run.state = state
        if state == DeploymentState.START:
            message = f"State: {state.value}"
        else:
            message = f"State: {previous.value} -> {state.value}"
        self.ctx.audit.log(
            LogLevel.INFO,
            run.host.name,
            message,
            event=AuditEventType.STATE_TRANSITION,
            echo=False,
            state=state.value,
            previous=previous.value,
            **fields,
        )
        self.ctx.console.verbose(message, host=run.host.name)

    def _finish(self, run: _HostRun, state: DeploymentState) -> DeploymentResult:
        self._log_state(run, state)
        result = run.finish(state, self.ctx.clock())
        level = LogLevel.INFO if result.succeeded else LogLevel.ERROR
        self.ctx.audit.log(
            level,
            run.host.name,
            f"{state.value}: {result.rules_applied}/{result.rules_attempted} rules applied",
            event=AuditEventType.DEPLOY_RESULT,
            echo=False,
            result=result.to_dict(),
        )
        return result
