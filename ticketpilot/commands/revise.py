"""Revise command implementation."""

import typer
from rich.console import Console
from rich.markdown import Markdown

from ticketpilot.commands.common import build_orchestrator, fail, load_config, progress_printer
from ticketpilot.workflow.broadcaster import ProgressBroadcaster
from ticketpilot.workflow.errors import (
    CollaboratorUnavailable,
    TicketNotFoundError,
    TransitionRejected,
)
from ticketpilot.workflow.reports import format_analysis

console = Console()


def command(
    ticket_id: str = typer.Argument(..., help="Ticket key, e.g. PROJ-123"),
    feedback: str = typer.Option(
        ..., "--feedback", "-f", help="What the new analysis must change"
    ),
):
    """Reject the analysis awaiting approval and analyze again with feedback."""
    broadcaster = ProgressBroadcaster()
    broadcaster.subscribe(ticket_id, progress_printer(console))

    try:
        config = load_config()
        orchestrator = build_orchestrator(config, broadcaster)

        console.print(f"\n[bold]Revising analysis of:[/bold] {ticket_id}")
        analysis = orchestrator.revise(ticket_id, feedback)
        broadcaster.flush(timeout=5)
        console.print()
        console.print(Markdown(format_analysis(analysis)))

        if not orchestrator.settings.auto_approve:
            console.print(
                f"\n[dim]Approve with:[/dim] [bold]ticketpilot approve {ticket_id}[/bold]"
            )
    except TransitionRejected as e:
        fail(console, f"{e} ({e.result.reason.value})")
    except TicketNotFoundError as e:
        fail(console, str(e))
    except CollaboratorUnavailable as e:
        fail(console, f"Analysis failed: {e}")
    except ValueError as e:
        fail(console, str(e))
    finally:
        broadcaster.close(timeout=5)
