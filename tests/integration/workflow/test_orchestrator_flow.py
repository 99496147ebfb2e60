"""Integration tests for WorkflowOrchestrator with in-memory collaborators.

The phase state machine, broadcaster, aggregator and report formatter are
real; the tracker, source control, AI client, build runner and pull request
host are fakes recording what the orchestrator asked of them.
"""

import tempfile
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from ticketpilot.workflow.broadcaster import ProgressBroadcaster
from ticketpilot.workflow.errors import (
    CollaboratorUnavailable,
    IllegalTransition,
    TicketNotFoundError,
    UnknownTicket,
    WorkflowBusy,
)
from ticketpilot.workflow.models import (
    AnalysisResult,
    BuildResult,
    ChangeSet,
    CommitInfo,
    FileChangeType,
    GeneratedFile,
    ImplementationStatus,
    ImplementationStep,
    PullRequestInfo,
    TestResult,
    Ticket,
    WorkflowPhase,
)
from ticketpilot.workflow.orchestrator import WorkflowOrchestrator, WorkflowSettings, ticket_hash
from ticketpilot.workflow.phase_machine import PhaseStateMachine, PhaseStore
from ticketpilot.workflow.reports import (
    ANALYSIS_HEADER,
    BUILD_FAILED_MARKER,
    COMPLETED_HEADER,
    FAILED_HEADER,
    WORKFLOW_FAILED_HEADER,
)

TICKET = Ticket(id="PROJ-7", title="Add order cache!", type="Story", url="https://jira/browse/PROJ-7")


class FakeTracker:
    def __init__(self, tickets=None):
        self.tickets = {t.id: t for t in (tickets or [TICKET])}
        self.comments = []
        self.links = []
        self.fail_comments = False

    def fetch_ticket(self, ticket_id):
        if ticket_id not in self.tickets:
            raise TicketNotFoundError(ticket_id)
        return self.tickets[ticket_id]

    def post_comment(self, ticket_id, text):
        if self.fail_comments:
            raise CollaboratorUnavailable("jira", "comment rejected")
        self.comments.append((ticket_id, text))

    def search(self, query, max_results=50):
        return list(self.tickets.values())[:max_results]

    def add_remote_link(self, ticket_id, url, title):
        self.links.append((ticket_id, url, title))


class FakeSourceControl:
    def __init__(self):
        self.calls = []
        self.staged = [("A", "src/cache.py", 3, 0), ("M", "src/orders.py", 2, 1)]
        self.clean = True

    def checkout(self, branch_name):
        self.calls.append(("checkout", branch_name))

    def prepare_branch(self, branch_name, base_branch):
        self.calls.append(("prepare_branch", branch_name, base_branch))

    def stage_all(self):
        self.calls.append(("stage_all",))

    def staged_changes(self):
        return list(self.staged)

    def commit(self, message):
        self.calls.append(("commit", message))
        return CommitInfo(hash="abcdef0123456789", message=message)

    def push_branch(self, branch_name):
        self.calls.append(("push_branch", branch_name))

    def is_clean(self):
        return self.clean

    def discard_changes(self):
        self.calls.append(("discard_changes",))

    def names(self):
        return [c[0] for c in self.calls]


class FakeAI:
    def __init__(self):
        self.analysis_error = None
        self.implement_error = None
        self.analyze_gate = None
        self.feedback = []

    def analyze(self, ticket, feedback=""):
        self.feedback.append(feedback)
        if self.analyze_gate is not None:
            self.analyze_gate.wait(timeout=5)
        if self.analysis_error:
            raise self.analysis_error
        return AnalysisResult(
            ticket_id=ticket.id,
            estimated_effort_hours=3,
            implementation_plan=[ImplementationStep(order=1, description="Add cache")],
        )

    def implement(self, ticket, analysis):
        if self.implement_error:
            raise self.implement_error
        return ChangeSet(
            files=[
                GeneratedFile("src/cache.py", FileChangeType.CREATE, "CACHE = {}\n"),
                GeneratedFile("src/orders.py", FileChangeType.MODIFY, "from cache import CACHE\n"),
            ],
            explanation="Adds a cache",
        )


class FakeBuildRunner:
    def __init__(self, build=None, tests=None):
        self.build_result = build or BuildResult(is_success=True)
        self.test_result = tests or TestResult(total_tests=25, passed_tests=25, code_coverage=0.85)
        self.tests_run = 0

    def build(self):
        return self.build_result

    def test(self):
        self.tests_run += 1
        return self.test_result


class FakePullRequests:
    def __init__(self):
        self.opened = []

    def open_pull_request(self, title, body, head, base, draft=False, labels=(), reviewers=()):
        self.opened.append({"title": title, "head": head, "base": base, "labels": list(labels)})
        return PullRequestInfo(number=12, url="https://github.com/acme/shop/pull/12", title=title)


class Harness:
    def __init__(
        self, repo_path, settings=None, build_runner=None, analyses_dir=None, store=None, cache_dir=None
    ):
        self.broadcaster = ProgressBroadcaster()
        self.payloads = []
        self.broadcaster.subscribe(TICKET.id, self.payloads.append)
        self.tracker = FakeTracker()
        self.scm = FakeSourceControl()
        self.ai = FakeAI()
        self.builds = build_runner or FakeBuildRunner()
        self.prs = FakePullRequests()
        self.machine = PhaseStateMachine(store or PhaseStore(), self.broadcaster)
        self.orchestrator = WorkflowOrchestrator(
            state_machine=self.machine,
            tracker=self.tracker,
            source_control=self.scm,
            ai_client=self.ai,
            build_runner=self.builds,
            repo_path=repo_path,
            pull_requests=self.prs,
            settings=settings,
            analyses_dir=analyses_dir,
            cache_dir=cache_dir,
        )

    def events(self):
        self.broadcaster.flush(timeout=5)
        return list(self.payloads)

    def phases(self):
        return [p["phase"] for p in self.events() if p["type"] == "ProgressUpdate"]


@pytest.fixture
def repo():
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "src").mkdir()
        (Path(tmpdir) / "src" / "orders.py").write_text("ORDERS = []\n")
        yield Path(tmpdir)


@pytest.fixture
def harness(repo):
    harness = Harness(repo)
    yield harness
    harness.broadcaster.close(timeout=5)


class TestAnalysis:
    """Test start()."""

    def test_analysis_posted_and_awaiting_approval(self, harness):
        analysis = harness.orchestrator.start(TICKET.id)

        assert analysis.ticket_id == TICKET.id
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL
        assert len(harness.tracker.comments) == 1
        assert harness.tracker.comments[0][1].startswith(ANALYSIS_HEADER)
        assert harness.orchestrator.pending_analysis(TICKET.id) == analysis

        events = harness.events()
        assert [e["type"] for e in events] == ["ProgressUpdate", "ProgressUpdate", "AnalysisCompleted"]
        assert harness.phases() == ["Analyzing", "AwaitingApproval"]

    def test_second_start_is_busy(self, harness):
        harness.orchestrator.start(TICKET.id)

        with pytest.raises(WorkflowBusy):
            harness.orchestrator.start(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL

    def test_concurrent_start_rejected_while_first_runs(self, harness):
        gate = threading.Event()
        harness.ai.analyze_gate = gate
        errors = []

        first = threading.Thread(target=harness.orchestrator.start, args=(TICKET.id,))
        first.start()
        while harness.machine.current_phase(TICKET.id) is None:
            time.sleep(0.01)
        try:
            harness.orchestrator.start(TICKET.id)
        except WorkflowBusy as e:
            errors.append(e)
        finally:
            gate.set()
            first.join(timeout=5)

        assert len(errors) == 1
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL

    def test_ai_failure_fails_run_with_one_report(self, harness):
        harness.ai.analysis_error = CollaboratorUnavailable("claude", "timed out")

        with pytest.raises(CollaboratorUnavailable):
            harness.orchestrator.start(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.FAILED
        assert len(harness.tracker.comments) == 1
        assert harness.tracker.comments[0][1].startswith(WORKFLOW_FAILED_HEADER)
        assert "claude: timed out" in harness.tracker.comments[0][1]
        errors = [e for e in harness.events() if e["type"] == "WorkflowError"]
        assert errors[0]["phase"] == "Analyzing"
        assert harness.orchestrator.pending_analysis(TICKET.id) is None

    def test_unknown_ticket_fails_run(self, harness):
        with pytest.raises(TicketNotFoundError):
            harness.orchestrator.start("PROJ-404")

        assert harness.machine.current_phase("PROJ-404") == WorkflowPhase.FAILED

    def test_failed_run_can_restart(self, harness):
        harness.ai.analysis_error = CollaboratorUnavailable("claude", "timed out")
        with pytest.raises(CollaboratorUnavailable):
            harness.orchestrator.start(TICKET.id)

        harness.ai.analysis_error = None
        harness.orchestrator.start(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL

    def test_report_posting_failure_is_not_raised(self, harness):
        harness.tracker.fail_comments = True

        harness.orchestrator.start(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL


class TestImplementation:
    """Test approve()."""

    def test_successful_run(self, harness, repo):
        harness.orchestrator.start(TICKET.id)
        result = harness.orchestrator.approve(TICKET.id)

        assert result.is_success
        assert result.status == ImplementationStatus.COMPLETED
        assert result.branch_name == "feature/PROJ-7-add-order-cache"
        assert result.pull_request_number == 12
        assert result.duration is not None
        assert [c.path for c in result.created_files] == ["src/cache.py"]
        assert [c.path for c in result.modified_files] == ["src/orders.py"]
        assert (repo / "src" / "cache.py").read_text() == "CACHE = {}\n"

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.COMPLETED
        assert harness.phases()[:6] == [
            "Analyzing",
            "AwaitingApproval",
            "Implementing",
            "Building",
            "Testing",
            "Testing",
        ]
        assert harness.phases()[-1] == "Completed"
        assert harness.events()[-1]["type"] == "ImplementationCompleted"

        assert harness.scm.names() == [
            "prepare_branch",
            "stage_all",
            "commit",
            "push_branch",
        ]
        commit_message = harness.scm.calls[2][1]
        assert commit_message.startswith("feat(PROJ-7): Created 1 file(s), Modified 1 file(s)")
        assert commit_message.endswith("Closes PROJ-7")

        assert harness.prs.opened[0]["labels"] == ["enhancement"]
        assert harness.prs.opened[0]["base"] == "main"

        summary = harness.tracker.comments[-1][1]
        assert summary.startswith(COMPLETED_HEADER)
        assert "- Coverage: 85%" in summary
        assert "[PR #12](https://github.com/acme/shop/pull/12)" in summary
        assert harness.tracker.links == [
            (TICKET.id, "https://github.com/acme/shop/pull/12", "PR #12")
        ]
        assert harness.orchestrator.pending_analysis(TICKET.id) is None

    def test_exactly_one_terminal_report(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.orchestrator.approve(TICKET.id)

        headers = [text.splitlines()[0] for _, text in harness.tracker.comments]
        assert headers == [ANALYSIS_HEADER, COMPLETED_HEADER]

    def test_build_failure_skips_tests_and_pull_request(self, repo):
        errors = [
            "Program.cs(10,5): error CS0246: The type or namespace name 'Foo' could not be found",
            "Service.cs(7,9): error CS0103: The name 'bar' does not exist in the current context",
        ]
        harness = Harness(repo, build_runner=FakeBuildRunner(build=BuildResult(False, errors)))
        harness.orchestrator.start(TICKET.id)

        result = harness.orchestrator.approve(TICKET.id)

        assert result.status == ImplementationStatus.BUILD_FAILED
        assert result.test_result is None
        assert harness.builds.tests_run == 0
        assert harness.prs.opened == []
        assert "commit" not in harness.scm.names()
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.FAILED

        summary = harness.tracker.comments[-1][1]
        assert summary.startswith(FAILED_HEADER)
        assert BUILD_FAILED_MARKER in summary
        for error in errors:
            assert error in summary
        harness.broadcaster.close(timeout=5)

    def test_test_failure_skips_pull_request(self, repo):
        tests = TestResult(total_tests=10, passed_tests=8, failed_tests=2)
        harness = Harness(repo, build_runner=FakeBuildRunner(tests=tests))
        harness.orchestrator.start(TICKET.id)

        result = harness.orchestrator.approve(TICKET.id)

        assert result.status == ImplementationStatus.TEST_FAILED
        assert "push_branch" in harness.scm.names()
        assert harness.prs.opened == []
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.FAILED
        harness.broadcaster.close(timeout=5)

    def test_build_and_tests_disabled_still_traverse_phases(self, repo):
        settings = WorkflowSettings(auto_build=False, auto_run_tests=False)
        harness = Harness(repo, settings=settings)
        harness.orchestrator.start(TICKET.id)

        result = harness.orchestrator.approve(TICKET.id)

        assert result.is_success
        assert result.build_result is None
        assert "Building" in harness.phases()
        messages = [e.get("message") for e in harness.events()]
        assert "Build skipped." in messages
        assert "Tests skipped." in messages
        harness.broadcaster.close(timeout=5)

    def test_ai_failure_during_implementation(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.ai.implement_error = CollaboratorUnavailable("claude", "rate limited")

        with pytest.raises(CollaboratorUnavailable):
            harness.orchestrator.approve(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.FAILED
        summary = harness.tracker.comments[-1][1]
        assert summary.startswith(FAILED_HEADER)
        assert "claude: rate limited" in summary
        assert len(harness.tracker.comments) == 2

    def test_change_set_outside_repository_rejected(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.ai.implement = lambda ticket, analysis: ChangeSet(
            files=[GeneratedFile("../escape.py", FileChangeType.CREATE, "x")]
        )

        with pytest.raises(CollaboratorUnavailable, match="outside the repository"):
            harness.orchestrator.approve(TICKET.id)

    def test_unexpected_tracker_error_is_logged(self, harness, caplog):
        harness.orchestrator.start(TICKET.id)

        def rejecting(*args):
            raise RuntimeError("unexpected tracker response")

        harness.tracker.post_comment = rejecting
        harness.tracker.add_remote_link = rejecting

        result = harness.orchestrator.approve(TICKET.id)

        assert result.is_success
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.COMPLETED
        assert harness.events()[-1]["type"] == "ImplementationCompleted"
        assert "Could not post report to PROJ-7" in caplog.text
        assert "Could not link pull request to PROJ-7" in caplog.text

    def test_approve_without_analysis(self, harness):
        with pytest.raises(UnknownTicket):
            harness.orchestrator.approve(TICKET.id)

    def test_approve_twice_is_rejected(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.orchestrator.approve(TICKET.id)

        with pytest.raises(UnknownTicket):
            harness.orchestrator.approve(TICKET.id)

    def test_auto_approve_traverses_gate(self, repo):
        harness = Harness(repo, settings=WorkflowSettings(auto_approve=True))

        harness.orchestrator.start(TICKET.id)

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.COMPLETED
        assert "AwaitingApproval" in harness.phases()
        harness.broadcaster.close(timeout=5)

    def test_approval_survives_process_restart(self, repo):
        with tempfile.TemporaryDirectory() as state_dir:
            analyses_dir = Path(state_dir) / "analyses"
            first = Harness(repo, analyses_dir=analyses_dir)
            first.orchestrator.start(TICKET.id)

            second = Harness(repo, analyses_dir=analyses_dir, store=first.machine.store)

            result = second.orchestrator.approve(TICKET.id)

            assert result.is_success
            assert not any(analyses_dir.iterdir())
            first.broadcaster.close(timeout=5)
            second.broadcaster.close(timeout=5)


class TestCancel:
    """Test cancel()."""

    def test_cancel_awaiting_approval(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.scm.clean = False

        harness.orchestrator.cancel(TICKET.id, "Requirements changed")

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.FAILED
        assert harness.scm.names() == ["discard_changes", "checkout"]
        report = harness.tracker.comments[-1][1]
        assert report.startswith(WORKFLOW_FAILED_HEADER)
        assert "Requirements changed" in report
        assert harness.orchestrator.pending_analysis(TICKET.id) is None

    def test_cancel_unknown_ticket(self, harness):
        with pytest.raises(UnknownTicket):
            harness.orchestrator.cancel("PROJ-404", "nope")

    def test_cancel_finished_run(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.orchestrator.cancel(TICKET.id, "first")

        with pytest.raises(IllegalTransition):
            harness.orchestrator.cancel(TICKET.id, "second")


class TestAnalysisCache:
    """Test reuse of analyses for unchanged tickets."""

    def _restart(self, harness):
        harness.orchestrator.cancel(TICKET.id, "Starting over")
        return harness.orchestrator.start(TICKET.id)

    def test_ticket_hash_tracks_content(self):
        edited = replace(TICKET, title="Add order cache")
        relabeled = replace(TICKET, labels=["backend"], priority="High")

        assert len(ticket_hash(TICKET)) == 16
        assert ticket_hash(edited) != ticket_hash(TICKET)
        assert ticket_hash(relabeled) == ticket_hash(TICKET)

    def test_unchanged_ticket_analyzed_once(self, harness):
        first = harness.orchestrator.start(TICKET.id)

        second = self._restart(harness)

        assert harness.ai.feedback == [""]
        assert second == first
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL
        messages = [p["message"] for p in harness.events() if p["type"] == "ProgressUpdate"]
        assert messages[-1] == "Analysis retrieved from cache."

    def test_edited_ticket_analyzed_again(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.tracker.tickets[TICKET.id] = replace(TICKET, description="Cache per customer")

        self._restart(harness)

        assert len(harness.ai.feedback) == 2

    def test_cache_disabled(self, repo):
        harness = Harness(repo, settings=WorkflowSettings(use_analysis_cache=False))
        harness.orchestrator.start(TICKET.id)

        self._restart(harness)

        assert len(harness.ai.feedback) == 2
        harness.broadcaster.close(timeout=5)

    def test_cache_shared_between_processes(self, repo):
        with tempfile.TemporaryDirectory() as state_dir:
            cache_dir = Path(state_dir) / "cache"
            first = Harness(repo, cache_dir=cache_dir)
            first.orchestrator.start(TICKET.id)
            first.orchestrator.cancel(TICKET.id, "Starting over")

            second = Harness(repo, cache_dir=cache_dir, store=first.machine.store)
            analysis = second.orchestrator.start(TICKET.id)

            assert second.ai.feedback == []
            assert analysis.estimated_effort_hours == 3
            assert len(list(cache_dir.glob("PROJ-7-*.json"))) == 1
            first.broadcaster.close(timeout=5)
            second.broadcaster.close(timeout=5)

    def test_unreadable_cache_entry_is_a_miss(self, repo):
        with tempfile.TemporaryDirectory() as state_dir:
            cache_dir = Path(state_dir) / "cache"
            first = Harness(repo, cache_dir=cache_dir)
            first.orchestrator.start(TICKET.id)
            first.orchestrator.cancel(TICKET.id, "Starting over")
            for path in cache_dir.glob("*.json"):
                path.write_text("{not json")

            second = Harness(repo, cache_dir=cache_dir, store=first.machine.store)
            second.orchestrator.start(TICKET.id)

            assert second.ai.feedback == [""]
            first.broadcaster.close(timeout=5)
            second.broadcaster.close(timeout=5)


class TestRevise:
    """Test revise()."""

    def test_revision_replaces_pending_analysis(self, harness):
        harness.orchestrator.start(TICKET.id)

        harness.orchestrator.revise(TICKET.id, "Use Redis instead")

        assert harness.ai.feedback == ["", "Use Redis instead"]
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL
        assert harness.orchestrator.pending_analysis(TICKET.id) is not None
        assert harness.phases() == [
            "Analyzing",
            "AwaitingApproval",
            "Failed",
            "Analyzing",
            "AwaitingApproval",
        ]
        reports = [text for _, text in harness.tracker.comments]
        assert reports[1].startswith(WORKFLOW_FAILED_HEADER)
        assert "Revision requested: Use Redis instead" in reports[1]
        assert reports[2].startswith(ANALYSIS_HEADER)

    def test_revision_of_finished_run_starts_new_one(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.orchestrator.cancel(TICKET.id, "Requirements changed")

        harness.orchestrator.revise(TICKET.id, "Cover refunds too")

        assert harness.ai.feedback == ["", "Cover refunds too"]
        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL

    def test_empty_feedback_rejected(self, harness):
        harness.orchestrator.start(TICKET.id)

        with pytest.raises(ValueError):
            harness.orchestrator.revise(TICKET.id, "  ")

        assert harness.machine.current_phase(TICKET.id) == WorkflowPhase.AWAITING_APPROVAL

    def test_revision_during_implementation_is_busy(self, harness):
        harness.orchestrator.start(TICKET.id)
        harness.machine.request_transition(
            TICKET.id, WorkflowPhase.AWAITING_APPROVAL, WorkflowPhase.IMPLEMENTING
        )

        with pytest.raises(WorkflowBusy):
            harness.orchestrator.revise(TICKET.id, "Too late")

        assert harness.ai.feedback == [""]


class TestNaming:
    """Test branch and commit naming."""

    def test_bug_branch_and_labels(self, repo):
        harness = Harness(repo)
        bug = Ticket(id="PROJ-9", title="Crash on  empty cart!!", type="Bug")
        harness.tracker.tickets[bug.id] = bug

        assert harness.orchestrator.branch_name_for(bug) == "bugfix/PROJ-9-crash-on-empty-cart"
        harness.broadcaster.close(timeout=5)

    def test_long_titles_truncated(self, harness):
        ticket = Ticket(id="PROJ-1", title="x" * 80)
        slug = harness.orchestrator.branch_name_for(ticket).removeprefix("feature/PROJ-1-")
        assert len(slug) == 50
