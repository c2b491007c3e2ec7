"""Concurrent deployment across a fleet.

Each host is deployed by its own task on a bounded thread pool. Host tasks
share nothing but the run context; one host's failure never stops another.
"""

from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional, Sequence

from fwa.core.audit import AuditEventType
from fwa.core.context import RunContext
from fwa.services.backends.base import BackendKind
from fwa.services.orchestrator import DeploymentOrchestrator
from fwa.services.policy import Host, PolicySet
from fwa.services.results import DeploymentResult, DeploymentState, ErrorRecord


@dataclass
class FleetReport:
    """All host results of one run, sorted by host name."""
    results: list[DeploymentResult] = field(default_factory=list)
    run_id: Optional[str] = None
    dry_run: bool = False

    def summary(self) -> dict[str, int]:
        """Host count per final state (every state present, zeros included)."""
        counts = Counter(r.final_state for r in self.results)
        return {state.value: counts.get(state, 0) for state in DeploymentState if state.terminal}

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results)

    def result_for(self, host: str) -> Optional[DeploymentResult]:
        for result in self.results:
            if result.host == host:
                return result
        return None


class FleetCoordinator:
    """Runs DeploymentOrchestrator.deploy for many hosts at once."""

    def __init__(
        self,
        ctx: RunContext,
        orchestrator: Optional[DeploymentOrchestrator] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            ctx: Run context shared by every host task
            orchestrator: Per-host state machine (default: SSH-backed)
            max_concurrency: Hosts deployed in parallel (default: from settings)
        """
        self.ctx = ctx
        self.orchestrator = orchestrator or DeploymentOrchestrator(ctx)
        self.max_concurrency = max_concurrency or ctx.deploy.max_concurrency
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

    def run(self, policy: PolicySet, hosts: Sequence[Host]) -> FleetReport:
        """Deploy each host's role and collect one result per host.

        Hosts are dispatched with at most ``max_concurrency`` in flight.
        Cancelling the run context stops new hosts from starting; hosts
        already applying abort at their next command boundary.
        """
        report = FleetReport(run_id=self.ctx.audit.run_id, dry_run=self.ctx.dry_run)
        if not hosts:
            return report

        self.ctx.audit.log_run_start("deploy", [h.name for h in hosts])

        with ThreadPoolExecutor(
            max_workers=min(self.max_concurrency, len(hosts)),
            thread_name_prefix="fwa-host",
        ) as pool:
            futures: dict[Future, Host] = {
                pool.submit(self._deploy_one, policy, host): host
                for host in hosts
            }
            for future in as_completed(futures):
                host = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    # A bug in one host task is reported against that host only
                    self.ctx.audit.error(host.name, f"Host task crashed: {e}")
                    result = _aborted(host, ErrorRecord.from_exception(e), self.ctx)
                report.results.append(result)
                self._report_progress(result)

        report.results.sort(key=lambda r: r.host)
        self.ctx.audit.log_run_end(report.summary())
        return report

    def _deploy_one(self, policy: PolicySet, host: Host) -> DeploymentResult:
        if self.ctx.cancelled:
            return _aborted(
                host,
                ErrorRecord(kind="Cancelled", message="cancelled before start"),
                self.ctx,
            )
        return self.orchestrator.deploy(host, policy.role(host.role))

    def _report_progress(self, result: DeploymentResult) -> None:
        message = (
            f"{result.final_state.value}: {result.rules_applied}/{result.rules_attempted} rules"
            f" applied ({result.backend.value})"
        )
        if result.succeeded:
            self.ctx.console.success(message, host=result.host)
        elif result.final_state == DeploymentState.PARTIAL_FAILURE:
            self.ctx.console.warn(message, host=result.host)
        else:
            self.ctx.console.error(message, host=result.host)


def _aborted(host: Host, error: ErrorRecord, ctx: RunContext) -> DeploymentResult:
    now = ctx.clock()
    result = DeploymentResult(
        host=host.name,
        backend=BackendKind.UNKNOWN,
        rules_attempted=0,
        rules_applied=0,
        rules_failed=0,
        backup_ref=None,
        final_state=DeploymentState.ABORTED,
        errors=(error,),
        started_at=now,
        finished_at=now,
    )
    ctx.audit.warning(
        host.name,
        f"{DeploymentState.ABORTED.value}: {error.message}",
        event=AuditEventType.DEPLOY_RESULT,
        echo=False,
        result=result.to_dict(),
    )
    return result
