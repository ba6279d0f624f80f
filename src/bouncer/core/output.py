"""Console output for the bouncer, built on Rich.

Regular messages go to stdout, warnings and errors to stderr. Verbosity
decides what is shown:

- QUIET: errors and warnings only
- NORMAL: lifecycle steps and results
- VERBOSE: the same, plus status detail
- DEBUG: every ipset/iptables command line
"""

from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything


class Console:
    """Process-wide console shared by the CLI and the firewall services."""

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
        """Apply CLI flags."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        self.no_color = no_color
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    def info(self, message: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][INFO][/green] {message}")

    def success(self, message: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {message}")

    def warn(self, message: str) -> None:
        """Print a warning to stderr, regardless of verbosity."""
        self._err_console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        """Print an error to stderr, regardless of verbosity."""
        self._err_console.print(f"[red][ERROR][/red] {message}")

    def debug(self, message: str) -> None:
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] {message}")

    def step(self, message: str) -> None:
        """Print a firewall change about to be made (blue arrow)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[blue]->[/blue] {message}")

    def command(self, command_line: str) -> None:
        """Show a command line at debug level.

        Command lines are escaped: iptables arguments such as ``[!]``
        would otherwise be read as markup.
        """
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] [dim]$[/dim] {escape(command_line)}")

    def dry_run_msg(self, message: str) -> None:
        """Show what dry-run mode skipped."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {escape(message)}")

    def hint(self, message: str) -> None:
        self._console.print(f"[cyan]Hint:[/cyan] {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw text or a Rich renderable."""
        self._console.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        """Print YAML with syntax highlighting."""
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="cyan"))

    def operation_summary(
        self,
        operation: str,
        success: bool,
        counts: dict[str, int],
    ) -> None:
        """Print a panel of per-outcome counts; zero counts are dimmed."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        lines = [
            f"[bold]{key}:[/bold] {value}" if value else f"[dim]{key}: 0[/dim]"
            for key, value in counts.items()
        ]
        self._console.print(Panel(
            "\n".join(lines),
            title=f"{operation} - {status}",
            border_style="green" if success else "red",
        ))


# Global console instance
console = Console()
