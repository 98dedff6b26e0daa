"""Console output for the command line interface."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Formats messages, tables and JSON for the terminal.

    Informational messages are suppressed in quiet and JSON mode; errors
    and warnings always go to stderr.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()
        self.err_console = Console(stderr=True)

    def _chatty(self) -> bool:
        return not (self.quiet or self.json_output)

    def info(self, message: str) -> None:
        if self._chatty():
            self.console.print(message, highlight=False)

    def success(self, message: str) -> None:
        if self._chatty():
            self.console.print(f"[green]{message}[/green]", highlight=False)

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]Warning:[/yellow] {message}", highlight=False)

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print(self, message: str = "") -> None:
        """Print a message unless quiet."""
        if not self.quiet:
            self.console.print(message, highlight=False)

    def output_json(self, data: Any) -> None:
        """Print data as JSON, regardless of the quiet flag."""
        self.console.print_json(json.dumps(data))

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Print rows as a table, or as JSON in JSON mode.

        Args:
            rows: Rows as dictionaries
            columns: Keys of the columns to show, in order
            headers: Optional column titles by key
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in rows])
            return
        headers = headers or {}
        table = Table(show_header=True, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*(str(row.get(c, "")) for c in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a titled list of key/value pairs."""
        if not self._chatty():
            return
        self.console.print(f"\n[bold]{title}[/bold]")
        for key, value in items:
            self.console.print(f"  {key}: {value}", highlight=False)
