"""Console output using Rich.

Provides:
- Colored, level-tagged messages with optional [host] prefix
- Verbosity level control
- Dry-run mode indicators
- Tables and summary panels for fleet results
"""

from enum import IntEnum
from typing import Any, Optional

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything


def _prefix(host: Optional[str]) -> str:
    return f"[magenta]\\[{escape(host)}][/magenta] " if host else ""


class Console:
    """Centralized console output with Rich integration.

    Every message method takes an optional ``host`` so output from
    concurrent host deployments stays attributable.
    """

    def __init__(self) -> None:
        self._console = RichConsole(highlight=False)
        self._err_console = RichConsole(stderr=True, highlight=False)
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Configure console output settings."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        self.no_color = no_color
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    def info(self, message: str, host: Optional[str] = None) -> None:
        """Print info message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][INFO][/green] {_prefix(host)}{escape(message)}")

    def success(self, message: str, host: Optional[str] = None) -> None:
        """Print success message."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {_prefix(host)}{escape(message)}")

    def warn(self, message: str, host: Optional[str] = None) -> None:
        """Print warning message (yellow) to stderr."""
        self._err_console.print(f"[yellow][WARN][/yellow] {_prefix(host)}{escape(message)}")

    def error(self, message: str, host: Optional[str] = None) -> None:
        """Print error message (red) to stderr."""
        self._err_console.print(f"[red][ERROR][/red] {_prefix(host)}{escape(message)}")

    def debug(self, message: str, host: Optional[str] = None) -> None:
        """Print debug message (cyan) - only in debug mode."""
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] {_prefix(host)}{escape(message)}")

    def verbose(self, message: str, host: Optional[str] = None) -> None:
        """Print verbose message (dim) - only in verbose mode."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(f"[dim]{_prefix(host)}{escape(message)}[/dim]")

    def step(self, message: str, host: Optional[str] = None) -> None:
        """Print a step indicator (blue arrow)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[blue]->[/blue] {_prefix(host)}{escape(message)}")

    def dry_run_msg(self, message: str, host: Optional[str] = None) -> None:
        """Print dry-run indicator (blue)."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] {_prefix(host)}Would: {escape(message)}")

    def hint(self, message: str) -> None:
        """Print a helpful hint (cyan)."""
        self._console.print(f"[cyan]Hint:[/cyan] {escape(message)}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw message or Rich renderable with formatting."""
        self._console.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        """Print a formatted table."""
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Print a summary panel with key-value pairs."""
        content_lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                value_str = "[green]Yes[/green]" if value else "[red]No[/red]"
            else:
                value_str = escape(str(value))
            content_lines.append(f"[bold]{escape(key)}:[/bold] {value_str}")

        self._console.print(Panel("\n".join(content_lines), title=title, border_style="blue"))

    def confirm(
        self,
        message: str,
        default: bool = False,
        skip_confirm: bool = False,
    ) -> bool:
        """Ask for confirmation.

        Args:
            message: Question to ask
            default: Default answer if user just presses Enter
            skip_confirm: If True, return True without prompting
        """
        if skip_confirm:
            return True

        suffix = "[Y/n]" if default else "[y/N]"
        try:
            response = self._console.input(f"{message} {escape(suffix)}: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            return False

        if not response:
            return default
        return response in ("y", "yes")

    def status(self, message: str, spinner: str = "dots") -> Any:
        """Get a status context manager with spinner."""
        return self._console.status(message, spinner=spinner)


# Global console instance
console = Console()
