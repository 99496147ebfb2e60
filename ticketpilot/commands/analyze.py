"""Analyze command implementation."""

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
from ticketpilot.workflow.orchestrator import WorkflowSettings
from ticketpilot.workflow.reports import format_analysis

console = Console()


def command(
    ticket_id: str = typer.Argument(..., help="Ticket key, e.g. PROJ-123"),
    auto_approve: bool = typer.Option(
        False,
        "--auto-approve",
        help="Continue into implementation as soon as the analysis is posted",
    ),
    refresh: bool = typer.Option(
        False, "--refresh", help="Ignore any cached analysis and ask Claude again"
    ),
):
    """Analyze a ticket and post the plan to the tracker for approval."""
    broadcaster = ProgressBroadcaster()
    broadcaster.subscribe(ticket_id, progress_printer(console))

    try:
        config = load_config()
        settings = WorkflowSettings.from_config(config)
        settings.auto_approve = settings.auto_approve or auto_approve
        settings.use_analysis_cache = settings.use_analysis_cache and not refresh
        orchestrator = build_orchestrator(config, broadcaster, settings=settings)

        console.print(f"\n[bold]Analyzing ticket:[/bold] {ticket_id}")
        analysis = orchestrator.start(ticket_id)
        broadcaster.flush(timeout=5)
        console.print()
        console.print(Markdown(format_analysis(analysis)))

        if not settings.auto_approve:
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
