"""Status command implementation."""

from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ticketpilot.commands.common import PHASE_STYLES, fail, load_config
from ticketpilot.workflow.orchestrator import PendingAnalyses
from ticketpilot.workflow.phase_machine import PHASE_PROGRESS, PhaseStore

console = Console()


def command(
    ticket_id: Optional[str] = typer.Argument(
        None, help="Ticket key; omit to list every known ticket"
    ),
    as_yaml: bool = typer.Option(
        False, "--yaml", help="Print the phase record and pending analysis as YAML"
    ),
):
    """Show the current workflow phase of one or all tickets."""
    try:
        config = load_config()
        store = PhaseStore(config.phase_state_file)
    except ValueError as e:
        fail(console, str(e))

    records = store.snapshot()
    if ticket_id is not None:
        if ticket_id not in records:
            fail(console, f"No workflow run found for ticket {ticket_id}")
        records = {ticket_id: records[ticket_id]}

    pending = PendingAnalyses(config.analyses_dir)

    if as_yaml:
        document = {}
        for key, record in sorted(records.items()):
            analysis = pending.get(key)
            document[key] = {
                "phase": record.phase.value,
                "run_id": record.run_id,
                "updated_at": record.updated_at.isoformat(),
                "pending_analysis": analysis.to_dict() if analysis else None,
            }
        console.print(yaml.safe_dump(document, sort_keys=False, allow_unicode=True), end="")
        return

    if not records:
        console.print("[dim]No workflow runs recorded.[/dim]")
        return

    table = Table(title="Workflow Status")
    table.add_column("Ticket", style="bold")
    table.add_column("Phase")
    table.add_column("Progress", justify="right")
    table.add_column("Updated")
    table.add_column("Awaiting approval")

    for key, record in sorted(records.items()):
        style = PHASE_STYLES.get(record.phase.value, "cyan")
        table.add_row(
            key,
            f"[{style}]{record.phase.value}[/{style}]",
            f"{PHASE_PROGRESS[record.phase]}%",
            f"{record.updated_at:%Y-%m-%d %H:%M} UTC",
            "yes" if pending.get(key) is not None else "",
        )
    console.print(table)
