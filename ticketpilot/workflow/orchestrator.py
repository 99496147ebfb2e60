"""Workflow orchestrator driving a ticket from analysis to pull request.

The orchestrator owns no phase state of its own: every phase change goes
through the PhaseStateMachine, which records it and queues the matching
progress event. The orchestrator calls the collaborators between
transitions, aggregates the implementation's sub-results into a verdict,
and posts exactly one report to the ticket tracker when a run reaches a
terminal phase.

Run shape:
    start:   None -> Analyzing -> AwaitingApproval   (analysis posted)
    approve: AwaitingApproval -> Implementing -> Building -> Testing
             -> Completed | Failed                   (summary posted)
    cancel:  any non-terminal phase -> Failed        (failure report posted)
    revise:  AwaitingApproval -> Failed, then start again with feedback
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ticketpilot.workflow.aggregator import aggregate, status_for
from ticketpilot.workflow.collaborators import (
    AIClient,
    BuildRunner,
    PullRequestHost,
    SourceControl,
    TicketTracker,
)
from ticketpilot.workflow.errors import (
    CollaboratorUnavailable,
    IllegalTransition,
    TransitionRejected,
    UnknownTicket,
    WorkflowBusy,
)
from ticketpilot.workflow.models import (
    AnalysisResult,
    ChangeSet,
    FileChange,
    FileChangeType,
    ImplementationError,
    ImplementationResult,
    ImplementationStatus,
    RejectionReason,
    Ticket,
    TransitionResult,
    Verdict,
    WorkflowPhase,
    utcnow,
)
from ticketpilot.workflow.phase_machine import PhaseRecord, PhaseStateMachine
from ticketpilot.workflow.reports import (
    format_analysis,
    format_failure_report,
    format_implementation_summary,
    format_pull_request_body,
)

logger = logging.getLogger(__name__)

_REJECTIONS = {
    RejectionReason.ILLEGAL_TRANSITION: IllegalTransition,
    RejectionReason.WORKFLOW_BUSY: WorkflowBusy,
    RejectionReason.UNKNOWN_TICKET: UnknownTicket,
}

DEFAULT_COMMIT_TEMPLATE = "{type}({ticket_id}): {description}\n\n{body}\n\nCloses {ticket_id}"

MAX_BRANCH_SLUG = 50


@dataclass
class WorkflowSettings:
    """Behavior switches of the workflow."""

    auto_approve: bool = False
    auto_build: bool = True
    auto_run_tests: bool = True
    auto_create_pull_request: bool = True
    auto_update_tracker: bool = True
    use_analysis_cache: bool = True
    default_branch: str = "main"
    feature_prefix: str = "feature/"
    bugfix_prefix: str = "bugfix/"
    commit_template: str = DEFAULT_COMMIT_TEMPLATE
    draft_pull_requests: bool = False
    reviewers: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: Any) -> WorkflowSettings:
        """Build settings from a Config (anything with a dotted get())."""
        defaults = cls()
        return cls(
            auto_approve=config.get("workflow.auto_approve", defaults.auto_approve),
            auto_build=config.get("workflow.auto_build", defaults.auto_build),
            auto_run_tests=config.get("workflow.auto_run_tests", defaults.auto_run_tests),
            auto_create_pull_request=config.get(
                "workflow.auto_create_pull_request", defaults.auto_create_pull_request
            ),
            auto_update_tracker=config.get(
                "workflow.auto_update_tracker", defaults.auto_update_tracker
            ),
            use_analysis_cache=config.get(
                "workflow.use_analysis_cache", defaults.use_analysis_cache
            ),
            default_branch=config.get("git.default_branch", defaults.default_branch),
            feature_prefix=config.get("git.feature_prefix", defaults.feature_prefix),
            bugfix_prefix=config.get("git.bugfix_prefix", defaults.bugfix_prefix),
            commit_template=config.get("git.commit_template", defaults.commit_template),
            draft_pull_requests=config.get("github.draft", defaults.draft_pull_requests),
            reviewers=list(config.get("github.reviewers", [])),
        )


def slugify(title: str) -> str:
    """Branch-safe slug: lowercase, [a-z0-9-] only, single hyphens, at most 50 chars."""
    slug = re.sub(r"[^a-z0-9-]", "-", title.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:MAX_BRANCH_SLUG].rstrip("-")


def commit_type(ticket: Ticket) -> str:
    kind = ticket.type.lower().replace(" ", "")
    if kind == "bug":
        return "fix"
    if kind in ("story", "feature", "newfeature"):
        return "feat"
    if kind == "improvement":
        return "improve"
    return "chore"


def ticket_hash(ticket: Ticket) -> str:
    """Short content hash of the ticket fields an analysis is derived from."""
    content = f"{ticket.id}|{ticket.title}|{ticket.description}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class AnalysisFiles:
    """Analyses kept in memory and, with a directory, as <dir>/<key>.json."""

    def __init__(self, directory: Optional[Path] = None):
        self.directory = directory
        self._analyses: dict[str, AnalysisResult] = {}

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", key)
        return self.directory / f"{safe}.json"

    def _read(self, key: str, ticket_id: str) -> Optional[AnalysisResult]:
        if key in self._analyses:
            return self._analyses[key]
        if self.directory is None:
            return None

        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r") as f:
            analysis = AnalysisResult.from_dict(json.load(f), ticket_id=ticket_id)
        self._analyses[key] = analysis
        return analysis

    def _write(self, key: str, analysis: AnalysisResult) -> None:
        self._analyses[key] = analysis
        if self.directory is None:
            return

        self.directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w", dir=self.directory, delete=False, suffix=".json.tmp"
        ) as f:
            json.dump(analysis.to_dict(), f, indent=2)
            temp_path = f.name
        Path(temp_path).replace(self._path(key))

    def _remove(self, key: str) -> None:
        self._analyses.pop(key, None)
        if self.directory is not None:
            self._path(key).unlink(missing_ok=True)


class PendingAnalyses(AnalysisFiles):
    """Analyses awaiting approval, keyed by ticket id.

    With a directory, each analysis is also written to <dir>/<ticket>.json
    so that approval can happen in a later process.
    """

    def get(self, ticket_id: str) -> Optional[AnalysisResult]:
        return self._read(ticket_id, ticket_id)

    def put(self, analysis: AnalysisResult) -> None:
        self._write(analysis.ticket_id, analysis)

    def discard(self, ticket_id: str) -> None:
        self._remove(ticket_id)


class AnalysisCache(AnalysisFiles):
    """Finished analyses keyed by ticket id and ticket_hash().

    Editing the ticket's title or description changes the key, so a stale
    analysis is never returned. Cache files that cannot be read or written
    are logged and treated as misses.
    """

    @staticmethod
    def _key(ticket: Ticket) -> str:
        return f"{ticket.id}-{ticket_hash(ticket)}"

    def get(self, ticket: Ticket) -> Optional[AnalysisResult]:
        try:
            return self._read(self._key(ticket), ticket.id)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cached analysis of {ticket.id}: {e}")
            return None

    def put(self, ticket: Ticket, analysis: AnalysisResult) -> None:
        try:
            self._write(self._key(ticket), analysis)
        except OSError as e:
            logger.warning(f"Could not cache analysis of {ticket.id}: {e}")


class WorkflowOrchestrator:
    """Runs the ticket workflow against injected collaborators."""

    def __init__(
        self,
        state_machine: PhaseStateMachine,
        tracker: TicketTracker,
        source_control: SourceControl,
        ai_client: AIClient,
        build_runner: BuildRunner,
        repo_path: Path,
        pull_requests: Optional[PullRequestHost] = None,
        settings: Optional[WorkflowSettings] = None,
        analyses_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
    ):
        """Initialize the orchestrator.

        Args:
            state_machine: Phase state machine; its broadcaster receives all events
            tracker: Ticket tracker receiving analysis and result comments
            source_control: Working copy the change set is applied to
            ai_client: Produces analyses and change sets
            build_runner: Builds and tests the working copy
            repo_path: Root directory of the working copy
            pull_requests: Pull request host; None disables pull requests
            settings: Workflow switches (defaults when None)
            analyses_dir: Directory persisting analyses awaiting approval
            cache_dir: Directory persisting finished analyses by ticket content
        """
        self.state_machine = state_machine
        self.broadcaster = state_machine.broadcaster
        self.tracker = tracker
        self.source_control = source_control
        self.ai_client = ai_client
        self.build_runner = build_runner
        self.repo_path = Path(repo_path)
        self.pull_requests = pull_requests
        self.settings = settings or WorkflowSettings()
        self.pending = PendingAnalyses(analyses_dir)
        self.cache = AnalysisCache(cache_dir)

    def status(self, ticket_id: str) -> Optional[PhaseRecord]:
        return self.state_machine.record(ticket_id)

    def pending_analysis(self, ticket_id: str) -> Optional[AnalysisResult]:
        return self.pending.get(ticket_id)

    def start(self, ticket_id: str, feedback: str = "") -> AnalysisResult:
        """Start a run: analyze the ticket and wait for approval.

        An unchanged ticket reuses its cached analysis unless the cache is
        disabled or feedback is given.

        Args:
            ticket_id: Tracker id of the ticket
            feedback: Reviewer feedback the analysis must address

        Returns:
            The analysis now awaiting approval

        Raises:
            WorkflowBusy: If a run for the ticket is already in progress
            CollaboratorUnavailable: If the tracker or AI client failed; the
                run has been moved to Failed and a failure report posted
            TicketNotFoundError: If the tracker has no such ticket
        """
        phase = self._transition(ticket_id, None, WorkflowPhase.ANALYZING)
        logger.info(f"Starting analysis of ticket {ticket_id}")

        try:
            ticket = self.tracker.fetch_ticket(ticket_id)
            analysis = None
            if self.settings.use_analysis_cache and not feedback:
                analysis = self.cache.get(ticket)
            message = None
            if analysis is not None:
                logger.info(f"Reusing cached analysis of {ticket_id}")
                message = "Analysis retrieved from cache."
            else:
                analysis = self.ai_client.analyze(ticket, feedback=feedback)
                if analysis.ticket_id != ticket_id:
                    raise CollaboratorUnavailable(
                        "ai", f"Analysis returned for {analysis.ticket_id!r}, expected {ticket_id!r}"
                    )
                self.cache.put(ticket, analysis)
            self.pending.put(analysis)
            phase = self._transition(ticket_id, phase, WorkflowPhase.AWAITING_APPROVAL, message)
        except Exception as e:
            self.pending.discard(ticket_id)
            self._fail(ticket_id, phase, e, format_failure_report(ticket_id, phase, str(e)))
            raise

        if self.settings.auto_update_tracker:
            self._post(ticket_id, format_analysis(analysis))
        self.broadcaster.emit_analysis_completed(ticket_id, analysis)
        logger.info(
            f"Analysis of {ticket_id} completed: {analysis.complexity.value}, "
            f"~{analysis.estimated_effort_hours}h, "
            f"{len(analysis.implementation_plan)} step(s)"
        )

        if self.settings.auto_approve:
            logger.info(f"Auto-approving {ticket_id}")
            self.approve(ticket_id)
        return analysis

    def approve(self, ticket_id: str) -> ImplementationResult:
        """Implement an approved analysis, build, test and open a pull request.

        Build and test failures are verdicts: the run ends in Failed and the
        result is returned, not raised. A failed build skips the tests and
        the commit; failed tests skip the pull request.

        Raises:
            UnknownTicket: If no analysis awaits approval for the ticket
            WorkflowBusy, IllegalTransition: If the ticket is not awaiting approval
            CollaboratorUnavailable: If a collaborator failed; the run has been
                moved to Failed and the summary posted
        """
        analysis = self.pending.get(ticket_id)
        if analysis is None:
            raise UnknownTicket(
                ticket_id,
                TransitionResult(
                    accepted=False,
                    reason=RejectionReason.UNKNOWN_TICKET,
                    message=f"No analysis awaiting approval for ticket {ticket_id}",
                ),
            )

        phase = self._transition(
            ticket_id, WorkflowPhase.AWAITING_APPROVAL, WorkflowPhase.IMPLEMENTING
        )
        result = ImplementationResult(ticket_id=ticket_id)

        try:
            ticket = self.tracker.fetch_ticket(ticket_id)
            result.branch_name = self.branch_name_for(ticket)
            self.source_control.prepare_branch(result.branch_name, self.settings.default_branch)

            change_set = self.ai_client.implement(ticket, analysis)
            self.apply_change_set(change_set)
            self.source_control.stage_all()
            self._record_changes(result)

            phase = self._run_build(ticket_id, phase, result)
            if phase == WorkflowPhase.TESTING:
                self._commit_and_push(ticket, change_set, result)
                if result.test_result is None or result.test_result.all_passed:
                    self._open_pull_request(ticket, analysis, result)
        except Exception as e:
            result.errors.append(
                ImplementationError(message=str(e), phase=phase.value, details=type(e).__name__)
            )
            result.status = ImplementationStatus.FAILED
            result.completed_at = utcnow()
            self._fail(ticket_id, phase, e, format_implementation_summary(result))
            self.pending.discard(ticket_id)
            raise

        verdict = aggregate(result)
        result.status = status_for(verdict)
        result.completed_at = utcnow()
        final_phase = WorkflowPhase.COMPLETED if verdict == Verdict.SUCCESS else WorkflowPhase.FAILED
        self._transition(ticket_id, phase, final_phase, f"Implementation {verdict.value}.")
        self.pending.discard(ticket_id)

        self._post(ticket_id, format_implementation_summary(result))
        if result.pull_request_url and self.settings.auto_update_tracker:
            self._link_pull_request(ticket_id, result)
        self.broadcaster.emit_implementation_completed(ticket_id, result)
        logger.info(f"Implementation of {ticket_id} finished: {verdict.value}")
        return result

    def cancel(self, ticket_id: str, reason: str) -> None:
        """Fail a non-terminal run and discard uncommitted local changes.

        Raises:
            UnknownTicket: If the ticket has never run
            IllegalTransition: If the run already finished
        """
        phase = self.state_machine.current_phase(ticket_id)
        if phase is None:
            raise UnknownTicket(
                ticket_id,
                TransitionResult(
                    accepted=False,
                    reason=RejectionReason.UNKNOWN_TICKET,
                    message=f"No workflow run found for ticket {ticket_id}",
                ),
            )

        self._transition(ticket_id, phase, WorkflowPhase.FAILED, f"Workflow cancelled: {reason}")
        logger.info(f"Cancelled workflow for {ticket_id} during {phase.value}: {reason}")
        self.pending.discard(ticket_id)
        self.broadcaster.emit_error(ticket_id, phase, f"Workflow cancelled: {reason}")

        try:
            if not self.source_control.is_clean():
                self.source_control.discard_changes()
                self.source_control.checkout(self.settings.default_branch)
        except CollaboratorUnavailable as e:
            logger.error(f"Could not discard local changes for {ticket_id}: {e}")

        self._post(ticket_id, format_failure_report(ticket_id, phase, f"Workflow cancelled: {reason}"))

    def revise(self, ticket_id: str, feedback: str) -> AnalysisResult:
        """Replace the analysis awaiting approval with one addressing feedback.

        The current run is failed with the feedback as reason, then a new
        run starts that always asks the AI client again. A ticket with no
        run awaiting approval simply starts with the feedback.

        Raises:
            ValueError: If feedback is empty
            WorkflowBusy: If the ticket is being implemented
        """
        if not feedback.strip():
            raise ValueError("Revision feedback must not be empty")

        phase = self.state_machine.current_phase(ticket_id)
        if phase == WorkflowPhase.AWAITING_APPROVAL:
            reason = f"Revision requested: {feedback}"
            self._transition(ticket_id, phase, WorkflowPhase.FAILED, reason)
            logger.info(f"Revision of {ticket_id} requested: {feedback}")
            self.pending.discard(ticket_id)
            self._post(ticket_id, format_failure_report(ticket_id, phase, reason))

        return self.start(ticket_id, feedback=feedback)

    def branch_name_for(self, ticket: Ticket) -> str:
        prefix = self.settings.bugfix_prefix if ticket.is_bug else self.settings.feature_prefix
        slug = slugify(ticket.title)
        return f"{prefix}{ticket.id}-{slug}" if slug else f"{prefix}{ticket.id}"

    def commit_message_for(self, ticket: Ticket, result: ImplementationResult, explanation: str = "") -> str:
        parts = []
        if result.created_files:
            parts.append(f"Created {len(result.created_files)} file(s)")
        if result.modified_files:
            parts.append(f"Modified {len(result.modified_files)} file(s)")
        if result.deleted_files:
            parts.append(f"Deleted {len(result.deleted_files)} file(s)")

        return self.settings.commit_template.format(
            type=commit_type(ticket),
            ticket_id=ticket.id,
            description=", ".join(parts) or ticket.title,
            body=explanation or f"Implements {ticket.id}: {ticket.title}",
        )

    def apply_change_set(self, change_set: ChangeSet) -> None:
        """Write a change set into the working copy.

        Raises:
            CollaboratorUnavailable: If a file path points outside the repository
        """
        root = self.repo_path.resolve()
        for generated in change_set.files:
            target = (root / generated.path).resolve()
            if not target.is_relative_to(root) or target == root:
                raise CollaboratorUnavailable(
                    "ai", f"Refusing to write outside the repository: {generated.path}"
                )

            if generated.action == FileChangeType.DELETE:
                if target.exists():
                    target.unlink()
                    logger.debug(f"Deleted {generated.path}")
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(generated.content)
            logger.debug(f"Wrote {generated.path} ({generated.action.value})")

    def _record_changes(self, result: ImplementationResult) -> None:
        for status, path, added, removed in self.source_control.staged_changes():
            if status == "A":
                result.created_files.append(FileChange(path, added, removed))
            elif status == "D":
                result.deleted_files.append(path)
            else:
                result.modified_files.append(FileChange(path, added, removed))

    def _run_build(
        self, ticket_id: str, phase: WorkflowPhase, result: ImplementationResult
    ) -> WorkflowPhase:
        """Run the Building and Testing phases; returns the phase reached."""
        if self.settings.auto_build:
            phase = self._transition(ticket_id, phase, WorkflowPhase.BUILDING)
            result.build_result = self.build_runner.build()
            if not result.build_result.is_success:
                logger.warning(
                    f"Build failed for {ticket_id} with {len(result.build_result.errors)} error(s)"
                )
                return phase
        else:
            phase = self._transition(ticket_id, phase, WorkflowPhase.BUILDING, "Build skipped.")

        if self.settings.auto_run_tests:
            phase = self._transition(ticket_id, phase, WorkflowPhase.TESTING)
            result.test_result = self.build_runner.test()
            if not result.test_result.all_passed:
                logger.warning(f"{result.test_result.failed_tests} test(s) failed for {ticket_id}")
        else:
            phase = self._transition(ticket_id, phase, WorkflowPhase.TESTING, "Tests skipped.")
        return phase

    def _commit_and_push(
        self, ticket: Ticket, change_set: ChangeSet, result: ImplementationResult
    ) -> None:
        self.broadcaster.emit(ticket.id, WorkflowPhase.TESTING, 85, "Committing changes...")
        commit = self.source_control.commit(
            self.commit_message_for(ticket, result, change_set.explanation)
        )
        result.commits.append(commit)
        logger.info(f"Committed {commit.short_hash} on {result.branch_name}")

        self.broadcaster.emit(ticket.id, WorkflowPhase.TESTING, 90, "Pushing changes...")
        self.source_control.push_branch(result.branch_name)

    def _open_pull_request(
        self, ticket: Ticket, analysis: AnalysisResult, result: ImplementationResult
    ) -> None:
        if not self.settings.auto_create_pull_request or self.pull_requests is None:
            return

        self.broadcaster.emit(ticket.id, WorkflowPhase.TESTING, 95, "Creating pull request...")
        info = self.pull_requests.open_pull_request(
            title=f"{ticket.id}: {ticket.title}",
            body=format_pull_request_body(ticket, result, analysis),
            head=result.branch_name,
            base=self.settings.default_branch,
            draft=self.settings.draft_pull_requests,
            labels=["bug"] if ticket.is_bug else ["enhancement"],
            reviewers=self.settings.reviewers,
        )
        result.pull_request_url = info.url
        result.pull_request_number = info.number
        logger.info(f"Opened pull request #{info.number} for {ticket.id}: {info.url}")

    def _transition(
        self,
        ticket_id: str,
        expected_from: Optional[WorkflowPhase],
        to_phase: WorkflowPhase,
        message: Optional[str] = None,
    ) -> WorkflowPhase:
        """Request a transition; raises the matching TransitionRejected on refusal."""
        result = self.state_machine.request_transition(ticket_id, expected_from, to_phase, message)
        if not result.accepted:
            raise _REJECTIONS.get(result.reason, TransitionRejected)(ticket_id, result)
        return to_phase

    def _fail(
        self, ticket_id: str, phase: WorkflowPhase, error: Exception, report: str
    ) -> None:
        """Move a run that raised to Failed, then emit the error and post the report.

        If the run is no longer in the phase it failed in (e.g. it was
        cancelled meanwhile), its terminal report has already been posted.
        """
        logger.error(f"Workflow for {ticket_id} failed during {phase.value}: {error}")
        result = self.state_machine.request_transition(
            ticket_id, phase, WorkflowPhase.FAILED, f"Failed: {error}"
        )
        if not result.accepted:
            return
        self.broadcaster.emit_error(ticket_id, phase, str(error))
        self._post(ticket_id, report)

    def _post(self, ticket_id: str, text: str) -> None:
        try:
            self.tracker.post_comment(ticket_id, text)
        except Exception:
            logger.exception(f"Could not post report to {ticket_id}")

    def _link_pull_request(self, ticket_id: str, result: ImplementationResult) -> None:
        try:
            self.tracker.add_remote_link(
                ticket_id, result.pull_request_url, f"PR #{result.pull_request_number}"
            )
        except Exception:
            logger.exception(f"Could not link pull request to {ticket_id}")
