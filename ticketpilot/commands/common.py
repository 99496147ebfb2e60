"""Shared wiring for the workflow commands."""

from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console

from ticketpilot.core.config import Config
from ticketpilot.core.context import ProjectContext
from ticketpilot.integrations.github import GitHubClient
from ticketpilot.integrations.jira import JiraClient
from ticketpilot.workflow.broadcaster import ProgressBroadcaster
from ticketpilot.workflow.build_runner import CommandBuildRunner
from ticketpilot.workflow.claude_client import ClaudeClient
from ticketpilot.workflow.git_operations import GitOperations
from ticketpilot.workflow.orchestrator import WorkflowOrchestrator, WorkflowSettings
from ticketpilot.workflow.phase_machine import PhaseStateMachine, PhaseStore

PHASE_STYLES = {
    "Completed": "green",
    "Failed": "red",
    "AwaitingApproval": "yellow",
}


def load_config() -> Config:
    config = Config()
    if not config.exists():
        raise ValueError(
            f"Configuration not found: {config.config_file}\n"
            "Run 'ticketpilot init' first"
        )
    return config


def build_tracker(config: Config) -> JiraClient:
    return JiraClient(
        base_url=config.require("jira.base_url"),
        email=config.require("jira.email"),
        api_token=config.require("jira.api_token"),
    )


def build_orchestrator(
    config: Config,
    broadcaster: ProgressBroadcaster,
    context: Optional[ProjectContext] = None,
    settings: Optional[WorkflowSettings] = None,
) -> WorkflowOrchestrator:
    """Assemble the orchestrator and its adapters from configuration.

    Args:
        config: Loaded configuration
        broadcaster: Broadcaster receiving every progress event
        context: Repository the workflow runs in (default: detected from cwd)
        settings: Workflow settings (default: from configuration)

    Raises:
        ValueError: If a mandatory setting is missing
    """
    context = context or ProjectContext()
    settings = settings or WorkflowSettings.from_config(config)
    repo_path = str(context.project_root)

    pull_requests = None
    if settings.auto_create_pull_request:
        pull_requests = GitHubClient(
            repository=config.require("github.repository"),
            token=config.require("github.token"),
        )

    state_machine = PhaseStateMachine(PhaseStore(config.phase_state_file), broadcaster)
    return WorkflowOrchestrator(
        state_machine=state_machine,
        tracker=build_tracker(config),
        source_control=GitOperations(repo_path, remote=config.get("git.remote", "origin")),
        ai_client=ClaudeClient(
            context,
            cli_command=config.get("claude.cli_command", "claude"),
            timeout=config.get("claude.timeout", 1800),
        ),
        build_runner=CommandBuildRunner(
            repo_path,
            build_command=config.get("build.build_command", "make build"),
            test_command=config.get("build.test_command", "pytest"),
            timeout=config.get("build.timeout", 1800),
        ),
        repo_path=Path(repo_path),
        pull_requests=pull_requests,
        settings=settings,
        analyses_dir=config.analyses_dir,
        cache_dir=config.analysis_cache_dir,
    )


def progress_printer(console: Console):
    """Subscriber printing progress and error events to the console."""

    def _print(payload: dict[str, Any]) -> None:
        if payload["type"] == "ProgressUpdate":
            style = PHASE_STYLES.get(payload["phase"], "cyan")
            console.print(
                f"[{style}]{payload['percentage']:>3}%[/{style}] "
                f"[bold]{payload['phase']}[/bold] {payload['message']}"
            )
        elif payload["type"] == "WorkflowError":
            console.print(f"[red]✗ {payload['phase']}:[/red] {payload['error_message']}")

    return _print


def fail(console: Console, message: str) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[red]ERROR:[/red] {message}")
    raise typer.Exit(code=1)
