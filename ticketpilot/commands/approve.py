"""Approve command implementation."""

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
from ticketpilot.workflow.reports import format_implementation_summary

console = Console()


def command(
    ticket_id: str = typer.Argument(..., help="Ticket key, e.g. PROJ-123"),
):
    """Approve the pending analysis and implement it.

    Applies the generated change set on a new branch, builds, tests and
    opens a pull request. Exits with status 1 unless the run completed.
    """
    broadcaster = ProgressBroadcaster()
    broadcaster.subscribe(ticket_id, progress_printer(console))

    try:
        config = load_config()
        orchestrator = build_orchestrator(config, broadcaster)

        console.print(f"\n[bold]Implementing ticket:[/bold] {ticket_id}")
        result = orchestrator.approve(ticket_id)
        broadcaster.flush(timeout=5)
        console.print()
        console.print(Markdown(format_implementation_summary(result)))
    except TransitionRejected as e:
        fail(console, f"{e} ({e.result.reason.value})")
    except TicketNotFoundError as e:
        fail(console, str(e))
    except CollaboratorUnavailable as e:
        fail(console, f"Implementation failed: {e}")
    except ValueError as e:
        fail(console, str(e))
    finally:
        broadcaster.close(timeout=5)

    if not result.is_success:
        raise typer.Exit(code=1)
