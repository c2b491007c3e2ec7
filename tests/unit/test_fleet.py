"""Unit tests for fleet-wide deployment."""

import threading
import time

import pytest

from fwa.services import policy
from fwa.services.fleet import FleetCoordinator, FleetReport
from fwa.services.orchestrator import DeploymentOrchestrator
from fwa.services.results import DeploymentResult, DeploymentState
from fwa.services.backends.base import BackendKind

from conftest import BASE_TIME, FakeHost, FakeSessionFactory, make_host


def _result(host, state=DeploymentState.SUCCESS):
    return DeploymentResult(
        host=host,
        backend=BackendKind.SIMPLE_ALLOW_DENY,
        rules_attempted=1,
        rules_applied=1 if state == DeploymentState.SUCCESS else 0,
        rules_failed=0,
        backup_ref=None,
        final_state=state,
        started_at=BASE_TIME,
        finished_at=BASE_TIME,
    )


class TrackingOrchestrator:
    """Records how many deployments run at once."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = []
        self._lock = threading.Lock()

    def deploy(self, host, role):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.calls.append(host.name)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return _result(host.name)


@pytest.fixture
def loaded_policy(web_policy_raw):
    return policy.load(web_policy_raw)


class TestFleetReport:
    """Tests for FleetReport."""

    def test_summary_counts_every_terminal_state(self):
        report = FleetReport(results=[
            _result("a"),
            _result("b"),
            _result("c", DeploymentState.UNREACHABLE),
        ])
        assert report.summary() == {
            "Success": 2,
            "PartialFailure": 0,
            "Aborted": 0,
            "Unreachable": 1,
        }

    def test_succeeded(self):
        assert FleetReport(results=[_result("a")]).succeeded
        assert not FleetReport(results=[_result("a"), _result("b", DeploymentState.ABORTED)]).succeeded

    def test_result_for(self):
        report = FleetReport(results=[_result("a"), _result("b")])
        assert report.result_for("b").host == "b"
        assert report.result_for("zzz") is None


class TestFleetCoordinator:
    """Tests for FleetCoordinator.run."""

    def test_concurrency_bound(self, run_context, loaded_policy):
        orchestrator = TrackingOrchestrator()
        hosts = [make_host(f"web-{i}") for i in range(8)]

        report = FleetCoordinator(run_context, orchestrator, max_concurrency=3).run(loaded_policy, hosts)

        assert len(report.results) == 8
        assert orchestrator.peak <= 3
        assert sorted(orchestrator.calls) == sorted(h.name for h in hosts)

    def test_default_concurrency_from_settings(self, run_context):
        coordinator = FleetCoordinator(run_context, TrackingOrchestrator())
        assert coordinator.max_concurrency == run_context.deploy.max_concurrency

    def test_invalid_concurrency(self, run_context):
        with pytest.raises(ValueError):
            FleetCoordinator(run_context, TrackingOrchestrator(), max_concurrency=-1)

    def test_results_sorted_by_host(self, run_context, loaded_policy):
        hosts = [make_host(n) for n in ("web-c", "web-a", "web-b")]
        report = FleetCoordinator(run_context, TrackingOrchestrator(0)).run(loaded_policy, hosts)
        assert [r.host for r in report.results] == ["web-a", "web-b", "web-c"]

    def test_no_hosts(self, run_context, loaded_policy):
        report = FleetCoordinator(run_context, TrackingOrchestrator()).run(loaded_policy, [])
        assert report.results == []
        assert report.succeeded

    def test_hosts_isolated(self, run_context, loaded_policy):
        """One unreachable and one failing host do not affect the others."""
        factory = FakeSessionFactory({
            "web-1": FakeHost("ufw"),
            "web-2": FakeHost("iptables", fail_mutations=(1,)),
            "web-4": FakeHost("firewalld"),
        })
        orchestrator = DeploymentOrchestrator(run_context, session_factory=factory)
        hosts = [make_host(f"web-{i}") for i in range(1, 5)]

        report = FleetCoordinator(run_context, orchestrator, max_concurrency=4).run(loaded_policy, hosts)

        states = {r.host: r.final_state for r in report.results}
        assert states == {
            "web-1": DeploymentState.SUCCESS,
            "web-2": DeploymentState.PARTIAL_FAILURE,
            "web-3": DeploymentState.UNREACHABLE,
            "web-4": DeploymentState.SUCCESS,
        }
        assert report.summary()["Unreachable"] == 1
        assert not report.succeeded

    def test_crashing_task_reported_against_host(self, run_context, loaded_policy):
        class Crashy(TrackingOrchestrator):
            def deploy(self, host, role):
                if host.name == "web-2":
                    raise RuntimeError("boom")
                return super().deploy(host, role)

        hosts = [make_host("web-1"), make_host("web-2")]
        report = FleetCoordinator(run_context, Crashy(0)).run(loaded_policy, hosts)

        crashed = report.result_for("web-2")
        assert crashed.final_state == DeploymentState.ABORTED
        assert crashed.errors[0].kind == "RuntimeError"
        assert report.result_for("web-1").final_state == DeploymentState.SUCCESS

    def test_cancelled_before_start(self, run_context, loaded_policy):
        orchestrator = TrackingOrchestrator()
        run_context.cancel("test")

        report = FleetCoordinator(run_context, orchestrator).run(loaded_policy, [make_host()])

        (result,) = report.results
        assert result.final_state == DeploymentState.ABORTED
        assert result.errors[0].message == "cancelled before start"
        assert orchestrator.calls == []

    def test_run_logged(self, run_context, loaded_policy):
        FleetCoordinator(run_context, TrackingOrchestrator(0)).run(loaded_policy, [make_host()])
        log = run_context.audit.log_path.read_text()
        assert '"event": "run.start"' in log
        assert '"event": "run.end"' in log

    def test_report_carries_run_id(self, run_context, loaded_policy):
        report = FleetCoordinator(run_context, TrackingOrchestrator(0)).run(loaded_policy, [make_host()])
        assert report.run_id == run_context.audit.run_id
