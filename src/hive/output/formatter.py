"""Output formatting using Rich for terminal output."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

HIVE_THEME = Theme(
    {
        "success": "green",
        "error": "red bold",
        "warning": "yellow",
        "info": "blue",
        "metadata": "dim",
        "status.pending": "dim",
        "status.running": "cyan",
        "status.complete": "green",
        "status.failed": "red",
    }
)

STATUS_ICONS = {
    "pending": "○",
    "running": "◐",
    "complete": "●",
    "failed": "✗",
}


class OutputFormatter:
    """Handles all output formatting for hive.

    Created once per CLI invocation and passed down through the click
    context object.
    """

    def __init__(self, color: bool = True, verbose: bool = False) -> None:
        self.console = Console(theme=HIVE_THEME, force_terminal=color, highlight=color)
        self.verbose = verbose

    def print_error(self, message: str) -> None:
        self.console.print(f"[error]Error: {message}[/error]")

    def print_success(self, message: str) -> None:
        self.console.print(f"[success]{message}[/success]")

    def print_info(self, message: str) -> None:
        self.console.print(f"[info]{message}[/info]")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[warning]{message}[/warning]")

    def print_json(self, data: Any) -> None:
        """Print structured data as JSON."""
        self.console.print_json(json.dumps(data, default=str))

    def print_checkpoints(self, summaries: list[dict[str, Any]]) -> None:
        """Print checkpoint summaries, newest first."""
        if not summaries:
            self.print_warning("No checkpoints")
            return

        table = Table(title="Checkpoints")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Created", style="metadata")
        table.add_column("Reason")
        table.add_column("Phase")
        table.add_column("Status", justify="center")

        for summary in summaries:
            table.add_row(
                summary["checkpoint_id"],
                summary["created_at"],
                summary["reason"],
                summary.get("phase") or "-",
                summary["status"],
            )
        self.console.print(table)

    def print_branches(self, run_id: str, branches: list[dict[str, Any]], summary: dict[str, Any]) -> None:
        """Print each branch with its status icon plus the merge status."""
        table = Table(title=f"Parallel branches: {run_id}")
        table.add_column("", justify="center")
        table.add_column("Branch", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Phase")
        table.add_column("Done", justify="right")

        for branch in branches:
            status = branch["status"]
            style = f"status.{status}"
            table.add_row(
                f"[{style}]{STATUS_ICONS.get(status, '?')}[/{style}]",
                branch["name"],
                f"[{style}]{status}[/{style}]",
                branch.get("current_phase") or "-",
                str(len(branch.get("phases_completed", []))),
            )
        self.console.print(table)
        self._print_metadata({
            "complete": summary["completed"],
            "failed": summary["failed"],
            "running": summary["running"],
            "pending": summary["pending"],
            "merge": summary["merge_status"],
        })

    def print_report_check(self, result: str, details: dict[str, Any]) -> None:
        """Print the verdict on an agent's output with the extracted blocks."""
        style = "success" if result.startswith("pass") else "warning"
        body = json.dumps(details, indent=2, default=str)
        self.console.print(Panel(body, title=f"[{style}]{result}[/{style}]", border_style=style))

    def _print_metadata(self, metadata: dict[str, Any]) -> None:
        """Print metadata in a dimmed style."""
        parts = [f"{k}={v}" for k, v in metadata.items()]
        self.console.print(f"[metadata]({', '.join(parts)})[/metadata]")
