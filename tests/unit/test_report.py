"""Unit tests for run reports."""

import io
import json
from dataclasses import replace
from datetime import timedelta

import pytest
from rich.console import Console as RichConsole

from fwa.core.exceptions import ConfigurationError, NotFoundError
from fwa.core.output import Console
from fwa.services.backends.base import BackendKind, RestoreGranularity
from fwa.services.fleet import FleetReport
from fwa.services.report import latest_report, load_report, render_table, render_text, write_report
from fwa.services.results import DeploymentResult, DeploymentState, ErrorRecord, RollbackResult

from conftest import BASE_TIME


def _report() -> FleetReport:
    ok = DeploymentResult(
        host="web-1",
        backend=BackendKind.SIMPLE_ALLOW_DENY,
        rules_attempted=2,
        rules_applied=2,
        rules_failed=0,
        backup_ref="web-1/20240101T120000000000Z",
        final_state=DeploymentState.SUCCESS,
        started_at=BASE_TIME,
        finished_at=BASE_TIME,
    )
    aborted = DeploymentResult(
        host="web-2",
        backend=BackendKind.SIMPLE_ALLOW_DENY,
        rules_attempted=5,
        rules_applied=2,
        rules_failed=0,
        backup_ref="web-2/20240101T120000000000Z",
        final_state=DeploymentState.ABORTED,
        errors=(ErrorRecord(kind="ExecutionError:ChannelClosed", message="Connection lost",
                            command="ufw allow 8080/tcp"),),
        warnings=(ErrorRecord(kind="CapabilityGapWarning", message="[bold]not markup[/bold]"),),
        rollback=RollbackResult(
            host="web-2",
            backend=BackendKind.SIMPLE_ALLOW_DENY,
            backup_key="web-2/20240101T120000000000Z",
            granularity=RestoreGranularity.ADVISORY,
            commands_run=5,
            commands_failed=0,
            verified=True,
            success=True,
            warnings=(ErrorRecord(kind="RestoreAdvisory", message="ufw restore is advisory"),),
        ),
        started_at=BASE_TIME,
        finished_at=BASE_TIME,
    )
    return FleetReport(results=[ok, aborted], run_id="abc123")


class TestWriteAndLoad:
    """Tests for report persistence."""

    def test_write_names_file_by_time_and_run(self, tmp_path):
        path = write_report(_report(), tmp_path / "reports", timestamp=BASE_TIME)
        assert path.name == "run-20240101T120000Z-abc123.json"
        assert not list((tmp_path / "reports").glob("*.tmp"))

    def test_written_json(self, tmp_path):
        data = json.loads(write_report(_report(), tmp_path, timestamp=BASE_TIME).read_text())
        assert data["run_id"] == "abc123"
        assert data["summary"]["Aborted"] == 1
        assert data["results"][1]["rollback"]["granularity"] == "advisory"

    def test_load_restores_results(self, tmp_path):
        report = _report()
        loaded = load_report(write_report(report, tmp_path, timestamp=BASE_TIME))
        assert loaded.results == report.results
        assert loaded.run_id == "abc123"

    def test_load_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            load_report(tmp_path / "run-nope.json")

    def test_load_invalid(self, tmp_path):
        path = tmp_path / "run-bad.json"
        path.write_text('{"results": [{"host": "x"}]}')
        with pytest.raises(ConfigurationError):
            load_report(path)

    def test_unwritable_dir(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(ConfigurationError):
            write_report(_report(), blocker)


class TestLatestReport:
    """Tests for latest_report."""

    def test_newest_wins(self, tmp_path):
        write_report(_report(), tmp_path, timestamp=BASE_TIME)
        newest = write_report(_report(), tmp_path, timestamp=BASE_TIME + timedelta(hours=1))
        assert latest_report(tmp_path) == newest

    def test_none(self, tmp_path):
        with pytest.raises(NotFoundError):
            latest_report(tmp_path)
        with pytest.raises(NotFoundError):
            latest_report(tmp_path / "missing")


class TestRender:
    """Tests for text and table rendering."""

    def test_render_text(self):
        text = render_text(_report())

        assert "Run: abc123" in text
        assert "--- web-1 ---" in text
        assert "State:    Success" in text
        assert "ExecutionError:ChannelClosed: Connection lost [ufw allow 8080/tcp]" in text
        assert "Rollback: succeeded from web-2/20240101T120000000000Z" in text
        assert "ufw restore is advisory" in text

    def test_render_text_not_html_escaped(self):
        report = _report()
        report.results[0] = replace(
            report.results[0],
            warnings=(ErrorRecord(kind="RestoreAdvisory", message="reset <default> & reload"),),
        )
        assert "reset <default> & reload" in render_text(report)

    def test_render_table(self):
        console = Console()
        buffer = io.StringIO()
        console._console = RichConsole(file=buffer, width=400, no_color=True)

        render_table(console, _report())

        output = buffer.getvalue()
        assert "web-1" in output
        assert "PartialFailure" in output
        assert "rollback succeeded" in output
        assert "[bold]not markup[/bold]" in output
