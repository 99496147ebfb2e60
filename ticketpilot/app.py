"""Main Typer application instance."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from ticketpilot.commands import analyze, approve, cancel, init, revise, search, status

app = typer.Typer(
    name="ticketpilot",
    help="Ticket-to-pull-request workflow: analyze, approve, implement, build, test",
    add_completion=False,
)


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Route workflow logging through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


app.command(name="init")(init.command)
app.command(name="analyze")(analyze.command)
app.command(name="approve")(approve.command)
app.command(name="cancel")(cancel.command)
app.command(name="revise")(revise.command)
app.command(name="status")(status.command)
app.command(name="search")(search.command)


def main():
    """Entry point for pip-installed command."""
    app()


if __name__ == "__main__":
    main()
