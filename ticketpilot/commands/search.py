"""Search command implementation."""

import typer
from rich.console import Console
from rich.table import Table

from ticketpilot.commands.common import build_tracker, fail, load_config
from ticketpilot.workflow.errors import CollaboratorUnavailable

console = Console()


def command(
    query: str = typer.Argument(..., help='JQL query, e.g. "project = PROJ AND status = Open"'),
    max_results: int = typer.Option(50, "--max", "-n", help="Maximum number of tickets"),
):
    """Search the ticket tracker."""
    try:
        tracker = build_tracker(load_config())
        tickets = tracker.search(query, max_results=max_results)
    except CollaboratorUnavailable as e:
        fail(console, f"Search failed: {e}")
    except ValueError as e:
        fail(console, str(e))

    if not tickets:
        console.print("[dim]No tickets found.[/dim]")
        return

    table = Table(title=f"{len(tickets)} ticket(s)")
    table.add_column("Key", style="bold")
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Title")
    for ticket in tickets:
        table.add_row(ticket.id, ticket.type, ticket.priority, ticket.status, ticket.title)
    console.print(table)
