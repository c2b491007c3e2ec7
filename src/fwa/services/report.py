"""Run reports.

A finished run is written to ``<report_dir>/run-<timestamp>.json`` so it
can be reviewed later with ``fwa report``. Reports render either as a
rich table on the console or as plain text through a Jinja2 template.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape
from rich.markup import escape

from fwa.core.exceptions import ConfigurationError, NotFoundError
from fwa.core.output import Console
from fwa.services.fleet import FleetReport
from fwa.services.results import DeploymentResult, DeploymentState


REPORT_PREFIX = "run-"
REPORT_SUFFIX = ".json"
REPORT_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"

STATE_STYLES = {
    DeploymentState.SUCCESS: "green",
    DeploymentState.PARTIAL_FAILURE: "yellow",
    DeploymentState.ABORTED: "red",
    DeploymentState.UNREACHABLE: "red",
}

_jinja_env = Environment(
    loader=PackageLoader("fwa", "templates"),
    autoescape=select_autoescape(),
    trim_blocks=True,
    lstrip_blocks=True,
)


def report_to_dict(report: FleetReport, generated_at: Optional[datetime] = None) -> dict:
    generated_at = generated_at or datetime.now(timezone.utc)
    return {
        "run_id": report.run_id,
        "dry_run": report.dry_run,
        "generated_at": generated_at.isoformat(),
        "summary": report.summary(),
        "results": [r.to_dict() for r in report.results],
    }


def write_report(
    report: FleetReport,
    report_dir: Path,
    timestamp: Optional[datetime] = None,
) -> Path:
    """Persist a run report as JSON.

    Returns:
        Path of the written report

    Raises:
        ConfigurationError: If the report directory is not writable
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    name = f"{REPORT_PREFIX}{timestamp.astimezone(timezone.utc).strftime(REPORT_TIMESTAMP_FORMAT)}"
    if report.run_id:
        name += f"-{report.run_id}"
    path = report_dir / f"{name}{REPORT_SUFFIX}"

    content = json.dumps(report_to_dict(report, timestamp), indent=2)
    tmp_path = path.with_suffix(".tmp")
    try:
        report_dir.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(content)
        os.rename(tmp_path, path)
    except OSError as e:
        raise ConfigurationError(
            f"Cannot write report to {report_dir}: {e}",
            hint="Check paths.report_dir in config/fwa.yaml",
        ) from e
    return path


def load_report(path: Path) -> FleetReport:
    """Load a report written by write_report.

    Raises:
        NotFoundError: If the file does not exist
        ConfigurationError: If the file is not a valid report
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        raise NotFoundError(f"Report not found: {path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read report {path}: {e}") from e

    try:
        return FleetReport(
            results=[DeploymentResult.from_dict(r) for r in data["results"]],
            run_id=data.get("run_id"),
            dry_run=data.get("dry_run", False),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid report {path}: {e}") from e


def latest_report(report_dir: Path) -> Path:
    """Path of the newest report in ``report_dir``.

    Raises:
        NotFoundError: If there are no reports
    """
    candidates = sorted(report_dir.glob(f"{REPORT_PREFIX}*{REPORT_SUFFIX}")) if report_dir.is_dir() else []
    if not candidates:
        raise NotFoundError(
            f"No reports in {report_dir}",
            hint="Reports are written by: fwa deploy",
        )
    return candidates[-1]


def render_text(report: FleetReport) -> str:
    """Render a plain-text report."""
    template = _jinja_env.get_template("report.txt.j2")
    return template.render(
        run_id=report.run_id,
        dry_run=report.dry_run,
        summary=report.summary(),
        results=report.results,
    )


def render_table(console: Console, report: FleetReport) -> None:
    """Print a per-host table and a summary panel."""
    rows = []
    for result in report.results:
        style = STATE_STYLES.get(result.final_state, "white")
        problems = [str(e) for e in result.errors] + [str(w) for w in result.warnings]
        if result.rollback is not None:
            problems.append("rollback " + ("succeeded" if result.rollback.success else "FAILED"))
        rows.append([
            escape(result.host),
            result.backend.value,
            f"[{style}]{result.final_state.value}[/{style}]",
            f"{result.rules_applied}/{result.rules_attempted}",
            str(result.rules_failed),
            str(result.rules_skipped),
            escape(result.backup_ref or "-"),
            escape("; ".join(problems)) if problems else "-",
        ])

    console.table(
        title=f"Deployment {report.run_id or ''}".strip() + (" (dry-run)" if report.dry_run else ""),
        columns=["Host", "Backend", "State", "Applied", "Failed", "Skipped", "Backup", "Notes"],
        rows=rows,
    )
    console.summary("Summary", report.summary())
