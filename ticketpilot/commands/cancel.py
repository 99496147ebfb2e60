"""Cancel command implementation."""

import typer
from rich.console import Console

from ticketpilot.commands.common import build_orchestrator, fail, load_config
from ticketpilot.workflow.broadcaster import ProgressBroadcaster
from ticketpilot.workflow.errors import TransitionRejected

console = Console()


def command(
    ticket_id: str = typer.Argument(..., help="Ticket key, e.g. PROJ-123"),
    reason: str = typer.Option(
        "Cancelled by user", "--reason", "-r", help="Reason posted to the ticket"
    ),
):
    """Cancel an in-progress workflow and discard local changes."""
    broadcaster = ProgressBroadcaster()
    try:
        config = load_config()
        orchestrator = build_orchestrator(config, broadcaster)
        orchestrator.cancel(ticket_id, reason)
        console.print(f"[yellow]Cancelled workflow for {ticket_id}:[/yellow] {reason}")
    except TransitionRejected as e:
        fail(console, f"{e} ({e.result.reason.value})")
    except ValueError as e:
        fail(console, str(e))
    finally:
        broadcaster.close(timeout=5)
