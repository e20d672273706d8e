"""Rich console output for queue, status and ticket views."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from rich.console import Console
from rich.table import Table

from ..tickets import Ticket

# Shared console instance
console = Console()
error_console = Console(stderr=True)

PRIORITY_STYLES = {1: "bold red", 2: "yellow", 3: "cyan"}


def print_error(message: str) -> None:
    error_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_info(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")


def create_table(title: str, columns: list[tuple[str, str]]) -> Table:
    """Create a styled table.

    Args:
        title: Table title
        columns: List of (name, style) tuples
    """
    table = Table(title=title, show_header=True, header_style="bold")
    for name, style in columns:
        table.add_column(name, style=style)
    return table


def print_queue_status(queue_status: Mapping[str, Any], summary: Mapping[Any, int]) -> None:
    """Print queue counters and the per-status task summary."""
    console.print("[bold]Queue[/bold]")
    console.print(f"  Queued:       {queue_status['queue_count']}")
    console.print(f"  Blocked (P1): {queue_status['blocked_p1_count']}")
    last = queue_status.get("last_picked_title") or "[dim]none[/dim]"
    console.print(f"  Last picked:  {last}")
    console.print()

    table = create_table("Task status", [("Status", "cyan"), ("Tasks", "")])
    for status, count in summary.items():
        table.add_row(str(status), str(count))
    console.print(table)


def print_tickets(tickets: Iterable[Ticket], title: str = "Tickets") -> None:
    table = create_table(
        title,
        [("ID", "dim"), ("P", ""), ("Status", "magenta"), ("Type", ""), ("Title", "")],
    )
    for ticket in tickets:
        style = PRIORITY_STYLES.get(ticket.priority, "")
        priority = f"[{style}]{ticket.priority}[/{style}]" if style else str(ticket.priority)
        table.add_row(ticket.id, priority, str(ticket.status), str(ticket.type), ticket.title)
    console.print(table)
