"""Main CLI entry point using Typer.

This module defines the fwa application: project setup, policy
validation, fleet deployment, backups, rollback and run reports.
"""

import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from fwa import __version__
from fwa.core.config import DEFAULT_CONFIG_PATH, init_config, load_deployment, load_inventory
from fwa.core.context import RunContext, create_context
from fwa.core.exceptions import FWAError, NotFoundError, RollbackError
from fwa.core.output import console as app_console
from fwa.services.fleet import FleetCoordinator
from fwa.services.orchestrator import DeploymentOrchestrator
from fwa.services.policy import Host, find_role_hosts
from fwa.services.report import latest_report, load_report, render_table, render_text, write_report


app = typer.Typer(
    name="fwa",
    help="Firewall Automation - deploy role-based firewall policy to a fleet.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Mutating commands are logged only.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to settings file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

HostOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--host",
        "-H",
        help="Limit to this host (repeatable).",
    ),
]

RoleOption = Annotated[
    Optional[str],
    typer.Option(
        "--role",
        "-r",
        help="Limit to hosts with this role.",
    ),
]

YesOption = Annotated[
    bool,
    typer.Option(
        "--yes",
        "-y",
        help="Skip confirmation prompts.",
        is_flag=True,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        app_console.print(f"fwa version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Firewall Automation - deploy role-based firewall policy to a fleet.

    Policy is written once per role; each host's firewall backend
    (firewalld, ufw or iptables) is detected and the role's rules are
    translated into that backend's commands. Every host is backed up
    before it is changed.

    [bold]Examples:[/bold]
        fwa init
        fwa validate --offline
        fwa deploy --dry-run
        fwa deploy --role web --max-concurrency 10
        fwa rollback --host web-server-1
    """
    pass


def handle_error(error: FWAError) -> None:
    """Handle an FWAError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def select_hosts(hosts: list[Host], names: Optional[list[str]], role: Optional[str]) -> list[Host]:
    """Apply --host and --role filters to the inventory.

    Raises:
        NotFoundError: If a named host is not in the inventory or nothing matches
    """
    selected = find_role_hosts(hosts, role)
    if names:
        known = {h.name for h in hosts}
        missing = [n for n in names if n not in known]
        if missing:
            raise NotFoundError(
                f"Host not in inventory: {', '.join(missing)}",
                hint="Check config/servers.yaml",
            )
        selected = [h for h in selected if h.name in names]

    if not selected:
        raise NotFoundError(
            "No hosts match the given filters",
            hint="Check --host/--role against config/servers.yaml",
        )
    return selected


def _find_host(ctx: RunContext, name: str) -> Host:
    hosts = load_inventory(ctx.config.paths.inventory)
    return select_hosts(hosts, [name], None)[0]


# ============================================================================
# init
# ============================================================================

@app.command("init")
def init_cmd(
    directory: Annotated[
        Path,
        typer.Option("--dir", "-d", help="Project directory", file_okay=False),
    ] = Path("."),
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite existing example files"),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """Create config/, logs/, backups/ and reports/ with example files.

    [bold]Examples:[/bold]

        fwa init
        fwa init --dir /srv/fwa --force
    """
    app_console.configure(no_color=no_color)
    try:
        written = init_config(directory, force=force)
    except FWAError as e:
        handle_error(e)

    for path in written:
        app_console.success(f"Created {path}")
    app_console.info("Edit config/servers.yaml and config/policy.yaml, then run: fwa validate")
    app_console.hint("Point FWA_SSH_KEY_DIR at your SSH keys (never stored in config files)")


# ============================================================================
# validate
# ============================================================================

@app.command("validate")
def validate_cmd(
    config: ConfigOption = None,
    host: HostOption = None,
    role: RoleOption = None,
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Check policy and inventory only; do not contact hosts"),
    ] = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Validate policy and inventory, then probe each host's backend.

    [bold]Examples:[/bold]

        fwa validate --offline
        fwa validate --host web-server-1
    """
    try:
        ctx = create_context(config_path=config, verbose=verbose, quiet=quiet, no_color=no_color)
        policy, hosts, report = load_deployment(ctx.config)
        selected = select_hosts(hosts, host, role)
    except FWAError as e:
        handle_error(e)

    for warning in report.warnings:
        ctx.console.warn(warning)
    ctx.console.success(
        f"Policy valid: {len(policy.roles)} role(s), {len(hosts)} host(s) in inventory"
    )
    if offline:
        return

    orchestrator = DeploymentOrchestrator(ctx)
    rows = []
    failed = False
    for target in selected:
        check = orchestrator.verify_host(target)
        ok = check.reachable and check.verified
        failed = failed or not ok
        rows.append([
            check.host,
            "yes" if check.reachable else "[red]no[/red]",
            check.backend.value,
            "[green]active[/green]" if check.verified else "[yellow]inactive[/yellow]",
            escape("; ".join(str(e) for e in check.errors)) or "-",
        ])

    ctx.console.table("Host checks", ["Host", "Reachable", "Backend", "Firewall", "Notes"], rows)
    if failed:
        raise typer.Exit(1)


# ============================================================================
# deploy
# ============================================================================

@app.command("deploy")
def deploy_cmd(
    config: ConfigOption = None,
    host: HostOption = None,
    role: RoleOption = None,
    max_concurrency: Annotated[
        Optional[int],
        typer.Option("--max-concurrency", "-j", min=1, help="Hosts deployed in parallel"),
    ] = None,
    timeout: Annotated[
        Optional[int],
        typer.Option("--timeout", "-t", min=1, help="Abort the whole run after this many seconds"),
    ] = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Deploy each host's role to the fleet.

    Hosts are backed up before they are changed. A host that loses its
    connection mid-deploy, or a run interrupted with Ctrl-C, is rolled
    back from that backup.

    [bold]Examples:[/bold]

        fwa deploy --dry-run
        fwa deploy --role web -j 10 --timeout 900
    """
    try:
        ctx = create_context(
            config_path=config,
            dry_run=dry_run,
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
        )
        policy, hosts, validation = load_deployment(ctx.config)
        selected = select_hosts(hosts, host, role)
    except FWAError as e:
        handle_error(e)

    for warning in validation.warnings:
        ctx.console.warn(warning)

    coordinator = FleetCoordinator(ctx, max_concurrency=max_concurrency)

    def _interrupt(signum, frame) -> None:
        ctx.console.warn("Interrupted: stopping after the current command on each host")
        ctx.cancel("interrupted by operator")

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        with ctx:
            ctx.start_timeout(timeout or ctx.deploy.run_timeout)
            report = coordinator.run(policy, selected)
    finally:
        signal.signal(signal.SIGINT, previous)

    ctx.console.print()
    render_table(ctx.console, report)

    try:
        path = write_report(report, ctx.config.paths.report_dir, timestamp=ctx.clock())
        ctx.console.info(f"Report written to {path}")
    except FWAError as e:
        ctx.console.warn(e.message)

    if not report.succeeded:
        raise typer.Exit(1)


# ============================================================================
# backup
# ============================================================================

@app.command("backup")
def backup_cmd(
    config: ConfigOption = None,
    host: HostOption = None,
    role: RoleOption = None,
    list_only: Annotated[
        bool,
        typer.Option("--list", "-l", help="List stored backups instead of taking new ones"),
    ] = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Snapshot hosts' firewall state, or list stored backups.

    [bold]Examples:[/bold]

        fwa backup --host web-server-1
        fwa backup --list
    """
    try:
        ctx = create_context(config_path=config, verbose=verbose, quiet=quiet, no_color=no_color)
    except FWAError as e:
        handle_error(e)

    if list_only:
        try:
            names = host or ctx.backups.hosts()
            rows = [
                [b.host, b.key, b.backend.value, b.timestamp.isoformat()]
                for name in names
                for b in ctx.backups.list(name)
            ]
        except FWAError as e:
            handle_error(e)
        if not rows:
            ctx.console.info(f"No backups in {ctx.backups.root}")
            return
        ctx.console.table("Backups", ["Host", "Key", "Backend", "Taken"], rows)
        return

    try:
        selected = select_hosts(load_inventory(ctx.config.paths.inventory), host, role)
    except FWAError as e:
        handle_error(e)

    orchestrator = DeploymentOrchestrator(ctx)
    failed = False
    for target in selected:
        try:
            with ctx.console.status(f"Backing up {target.name}..."):
                backup = orchestrator.backup_host(target)
        except FWAError as e:
            failed = True
            ctx.console.error(e.message, host=target.name)
            continue
        ctx.console.success(f"Backup saved: {backup.key}", host=target.name)

    if failed:
        raise typer.Exit(1)


# ============================================================================
# rollback
# ============================================================================

@app.command("rollback")
def rollback_cmd(
    host: Annotated[str, typer.Option("--host", "-H", help="Host to restore")],
    key: Annotated[
        Optional[str],
        typer.Option("--key", "-k", help="Backup key (default: newest backup of the host)"),
    ] = None,
    config: ConfigOption = None,
    yes: YesOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Restore a host's firewall from a backup.

    [bold]Examples:[/bold]

        fwa rollback --host web-server-1
        fwa rollback --host web-server-1 --key web-server-1/20240101T120000000000Z
    """
    try:
        ctx = create_context(
            config_path=config,
            dry_run=dry_run,
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
        )
        target = _find_host(ctx, host)
        backup = ctx.backups.load(key) if key else ctx.backups.latest(host)
    except FWAError as e:
        handle_error(e)

    if backup.host != target.name:
        handle_error(NotFoundError(
            f"Backup {backup.key} belongs to {backup.host}, not {target.name}",
        ))

    if not dry_run and not ctx.console.confirm(
        f"Reset the firewall on {target.name} from {backup.key}?",
        skip_confirm=yes,
    ):
        ctx.console.warn("Operation cancelled")
        raise typer.Exit(0)

    with ctx.console.status(f"Restoring {target.name} from {backup.key}..."):
        result = DeploymentOrchestrator(ctx).rollback(target, backup)

    ctx.console.summary(f"Rollback: {target.name}", {
        "Backup": backup.key,
        "Backend": result.backend.value,
        "Commands": f"{result.commands_run - result.commands_failed}/{result.commands_run} succeeded",
        "Verified": result.verified,
        "Success": result.success,
    })
    for warning in result.warnings:
        ctx.console.warn(warning.message, host=target.name)

    if not result.success:
        raise typer.Exit(RollbackError.exit_code)


# ============================================================================
# report
# ============================================================================

@app.command("report")
def report_cmd(
    path: Annotated[
        Optional[Path],
        typer.Argument(help="Report file (default: newest in the report directory)"),
    ] = None,
    config: ConfigOption = None,
    text: Annotated[
        bool,
        typer.Option("--text", help="Plain-text output instead of a table"),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """Show a run report.

    [bold]Examples:[/bold]

        fwa report
        fwa report reports/run-20240101T120000Z.json --text
    """
    try:
        ctx = create_context(config_path=config, no_color=no_color)
        report = load_report(path or latest_report(ctx.config.paths.report_dir))
    except FWAError as e:
        handle_error(e)

    if text:
        ctx.console.print(render_text(report), markup=False)
    else:
        render_table(ctx.console, report)


# ============================================================================
# version
# ============================================================================

@app.command("version")
def version_cmd() -> None:
    """Show version."""
    app_console.print(f"fwa version {__version__}")


if __name__ == "__main__":
    app()
