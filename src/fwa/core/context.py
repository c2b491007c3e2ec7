"""Run context for deployments.

The RunContext carries everything a deployment run shares: the log
sink, the backup sink, the clock, settings, runtime flags and the
cancellation signal. It is created when a run starts and closed when it
ends; nothing in the engine reaches for module-level state instead.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from fwa.core.audit import AuditLogger
from fwa.core.config import DEFAULT_CONFIG_PATH, DeploySettings, FwaConfig, SecretsConfig
from fwa.core.output import Console, Verbosity, console as default_console
from fwa.services.backup_store import BackupStore


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunContext:
    """Shared state for one run.

    Attributes:
        config: Loaded settings
        audit: Structured log sink
        backups: Backup sink
        console: Human output
        clock: Source of timestamps
        dry_run: Log mutating commands instead of running them
        secrets: SSH credential locations from the environment
    """

    config: FwaConfig
    audit: AuditLogger
    backups: BackupStore
    console: Console = field(default_factory=lambda: default_console)
    clock: Callable[[], datetime] = utc_now
    dry_run: bool = False
    secrets: SecretsConfig = field(default_factory=SecretsConfig)

    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _timer: Optional[threading.Timer] = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, reason: str = "operator abort") -> None:
        """Signal every host task to stop at the next command boundary."""
        if not self._cancel_event.is_set():
            self.audit.warning(None, f"Run cancelled: {reason}")
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def start_timeout(self, seconds: Optional[float]) -> None:
        """Cancel the run automatically after ``seconds``."""
        if not seconds:
            return
        self._timer = threading.Timer(seconds, self.cancel, args=(f"run timeout of {seconds}s reached",))
        self._timer.daemon = True
        self._timer.start()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Tear down run-scoped resources."""
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._closed = True

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def deploy(self) -> DeploySettings:
        """Shortcut to deploy settings."""
        return self.config.deploy


def create_context(
    *,
    config_path: Optional[Path] = None,
    config: Optional[FwaConfig] = None,
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    console: Optional[Console] = None,
) -> RunContext:
    """Create a run context from CLI options.

    Args:
        config_path: Settings file (default: config/fwa.yaml)
        config: Pre-loaded settings (skips file loading if provided)
        dry_run: Preview changes without executing
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        console: Console to use (default: global console)

    Returns:
        Configured run context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    out = console or default_console
    out.configure(verbosity=verbosity, dry_run=dry_run, no_color=no_color)

    settings = config or FwaConfig.load_or_default(config_path or DEFAULT_CONFIG_PATH)

    return RunContext(
        config=settings,
        audit=AuditLogger(log_path=settings.paths.log_path, console=out),
        backups=BackupStore(settings.paths.backup_dir),
        console=out,
        dry_run=dry_run,
    )
