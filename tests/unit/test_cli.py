"""Unit tests for the fwa command line."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fwa import __version__
from fwa.cli import app, select_hosts
from fwa.core.exceptions import NotFoundError
from fwa.services.backends.base import BackendKind
from fwa.services.backup_store import Backup, BackupStore
from fwa.services.orchestrator import DeploymentOrchestrator

from conftest import FakeHost, FakeSessionFactory, make_host


runner = CliRunner()

HOST = "web-server-1"


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A fresh ``fwa init`` project as the working directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FWA_SSH_KEY_DIR", raising=False)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    return tmp_path


@pytest.fixture
def fleet(monkeypatch):
    """Route every SSH connection to in-memory hosts."""
    factory = FakeSessionFactory()
    monkeypatch.setattr(DeploymentOrchestrator, "_connect", lambda self, host: factory(host))
    return factory


def _save_backup(root: Path, kind=BackendKind.IPTABLES_LIKE, host=HOST) -> Backup:
    backup = Backup.create(host, kind, "*filter\nCOMMIT\n", timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
    BackupStore(root / "backups").save(backup)
    return backup


class TestVersion:
    """Tests for version output."""

    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_version_command(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert f"fwa version {__version__}" in result.output


class TestSelectHosts:
    """Tests for --host/--role filtering."""

    def test_filters(self):
        hosts = [make_host("web-1"), make_host("db-1", role="db")]
        assert [h.name for h in select_hosts(hosts, None, "db")] == ["db-1"]
        assert [h.name for h in select_hosts(hosts, ["web-1"], None)] == ["web-1"]
        assert len(select_hosts(hosts, None, None)) == 2

    def test_unknown_host(self):
        with pytest.raises(NotFoundError):
            select_hosts([make_host()], ["nope"], None)

    def test_nothing_selected(self):
        with pytest.raises(NotFoundError):
            select_hosts([make_host()], None, "db")


class TestInit:
    """Tests for fwa init."""

    def test_creates_project(self, project):
        assert (project / "config" / "policy.yaml").exists()
        assert (project / "backups").is_dir()

    def test_refuses_second_init(self, project):
        result = runner.invoke(app, ["init"])
        assert result.exit_code == 2

    def test_force(self, project):
        result = runner.invoke(app, ["init", "--force"])
        assert result.exit_code == 0


class TestValidate:
    """Tests for fwa validate."""

    def test_offline(self, project):
        result = runner.invoke(app, ["validate", "--offline"])
        assert result.exit_code == 0, result.output
        assert "Policy valid" in result.output

    def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["validate", "--offline"])
        assert result.exit_code == 2

    def test_invalid_policy(self, project):
        (project / "config" / "policy.yaml").write_text(
            "web:\n  allow: [{port: '80'}]\n  deny: [{port: '80'}]\n"
        )
        result = runner.invoke(app, ["validate", "--offline"])
        assert result.exit_code == 3

    def test_probes_hosts(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("firewalld")
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 0, result.output
        assert fleet.sessions[0].mutations == []

    def test_unreachable_host_fails(self, project, fleet):
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 1


class TestDeploy:
    """Tests for fwa deploy."""

    def test_success(self, project, fleet):
        host = FakeHost("ufw")
        fleet.hosts[HOST] = host

        result = runner.invoke(app, ["deploy"])

        assert result.exit_code == 0, result.output
        assert len(host.applied) == 4
        assert len(list((project / "backups" / HOST).iterdir())) == 1

        (report_path,) = (project / "reports").glob("run-*.json")
        data = json.loads(report_path.read_text())
        assert data["summary"]["Success"] == 1
        assert data["results"][0]["host"] == HOST

    def test_dry_run_changes_nothing(self, project, fleet):
        host = FakeHost("ufw")
        fleet.hosts[HOST] = host
        fleet.dry_run = True

        result = runner.invoke(app, ["deploy", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert host.mutations == 0
        assert not (project / "backups" / HOST).exists()

    def test_partial_failure_exit_code(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("ufw", fail_mutations=(2,))
        result = runner.invoke(app, ["deploy"])
        assert result.exit_code == 1

    def test_unreachable_exit_code(self, project, fleet):
        result = runner.invoke(app, ["deploy"])
        assert result.exit_code == 1

    def test_unknown_host(self, project, fleet):
        result = runner.invoke(app, ["deploy", "--host", "nope"])
        assert result.exit_code == NotFoundError.exit_code

    def test_role_filter(self, project, fleet):
        result = runner.invoke(app, ["deploy", "--role", "database"])
        assert result.exit_code == NotFoundError.exit_code
        assert fleet.sessions == []

    def test_run_log_written(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("iptables")
        runner.invoke(app, ["deploy"])
        log = (project / "logs" / "fwa.log").read_text()
        assert '"event": "host.state"' in log
        assert '"event": "run.end"' in log


class TestBackup:
    """Tests for fwa backup."""

    def test_take_and_list(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("iptables")

        result = runner.invoke(app, ["backup"])
        assert result.exit_code == 0, result.output

        listing = runner.invoke(app, ["backup", "--list"])
        assert listing.exit_code == 0
        assert HOST in listing.output
        assert "iptables" in listing.output

    def test_list_empty(self, project):
        result = runner.invoke(app, ["backup", "--list"])
        assert result.exit_code == 0
        assert "No backups" in result.output

    def test_unreachable(self, project, fleet):
        result = runner.invoke(app, ["backup"])
        assert result.exit_code == 1


class TestRollback:
    """Tests for fwa rollback."""

    def test_restores_newest_backup(self, project, fleet):
        host = FakeHost("iptables")
        fleet.hosts[HOST] = host
        _save_backup(project)

        result = runner.invoke(app, ["rollback", "--host", HOST, "--yes"])

        assert result.exit_code == 0, result.output
        assert host.applied[0].argv == ("-w", "-F", "INPUT")

    def test_explicit_key(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("iptables")
        backup = _save_backup(project)
        result = runner.invoke(app, ["rollback", "-H", HOST, "--key", backup.key, "-y"])
        assert result.exit_code == 0, result.output

    def test_key_for_other_host(self, project, fleet):
        backup = _save_backup(project, host="db-1")
        result = runner.invoke(app, ["rollback", "--host", HOST, "--key", backup.key, "--yes"])
        assert result.exit_code == NotFoundError.exit_code

    def test_no_backups(self, project, fleet):
        result = runner.invoke(app, ["rollback", "--host", HOST, "--yes"])
        assert result.exit_code == NotFoundError.exit_code

    def test_declined(self, project, fleet):
        host = FakeHost("iptables")
        fleet.hosts[HOST] = host
        _save_backup(project)

        result = runner.invoke(app, ["rollback", "--host", HOST], input="n\n")

        assert result.exit_code == 0
        assert host.mutations == 0

    def test_failed_restore(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("iptables", fail_mutations=(1,))
        _save_backup(project)
        result = runner.invoke(app, ["rollback", "--host", HOST, "--yes"])
        assert result.exit_code == 7


class TestReport:
    """Tests for fwa report."""

    def test_latest(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("ufw")
        runner.invoke(app, ["deploy"])

        result = runner.invoke(app, ["report", "--text"])

        assert result.exit_code == 0, result.output
        assert "Firewall deployment report" in result.output
        assert f"--- {HOST} ---" in result.output

    def test_table(self, project, fleet):
        fleet.hosts[HOST] = FakeHost("ufw")
        runner.invoke(app, ["deploy"])
        result = runner.invoke(app, ["report"])
        assert result.exit_code == 0
        assert "Summary" in result.output

    def test_none(self, project):
        result = runner.invoke(app, ["report"])
        assert result.exit_code == NotFoundError.exit_code
