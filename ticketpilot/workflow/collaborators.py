"""Protocols for the external collaborators driven by the orchestrator.

The workflow engine only talks to the outside world through these narrow
interfaces. Concrete adapters live in ticketpilot.workflow.git_operations,
ticketpilot.workflow.claude_client, ticketpilot.workflow.build_runner and
ticketpilot.integrations; tests substitute fakes.

Adapters raise CollaboratorUnavailable for network, auth or process
failures and TicketNotFoundError for unknown tickets.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from ticketpilot.workflow.models import (
    AnalysisResult,
    BuildResult,
    ChangeSet,
    CommitInfo,
    PullRequestInfo,
    TestResult,
    Ticket,
)


class TicketTracker(Protocol):
    def fetch_ticket(self, ticket_id: str) -> Ticket: ...

    def post_comment(self, ticket_id: str, text: str) -> None: ...

    def search(self, query: str, max_results: int = 50) -> list[Ticket]: ...

    def add_remote_link(self, ticket_id: str, url: str, title: str) -> None: ...


class SourceControl(Protocol):
    def checkout(self, branch_name: str) -> None: ...

    def prepare_branch(self, branch_name: str, base_branch: str) -> None: ...

    def stage_all(self) -> None: ...

    def staged_changes(self) -> list[tuple[str, str, int, int]]:
        """Return (status letter, path, lines added, lines removed) per staged file."""
        ...

    def commit(self, message: str) -> CommitInfo: ...

    def push_branch(self, branch_name: str) -> None: ...

    def is_clean(self) -> bool: ...

    def discard_changes(self) -> None: ...


class PullRequestHost(Protocol):
    def open_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
        labels: Sequence[str] = (),
        reviewers: Sequence[str] = (),
    ) -> PullRequestInfo: ...


class AIClient(Protocol):
    def analyze(self, ticket: Ticket, feedback: str = "") -> AnalysisResult: ...

    def implement(self, ticket: Ticket, analysis: AnalysisResult) -> ChangeSet: ...


class BuildRunner(Protocol):
    def build(self) -> BuildResult: ...

    def test(self) -> TestResult: ...


class Publisher(Protocol):
    """Subscriber transport: publishes a payload on a named channel."""

    def publish(self, channel: str, payload: dict[str, Any]) -> None: ...
