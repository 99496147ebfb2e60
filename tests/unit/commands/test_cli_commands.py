"""Unit tests for the ticketpilot CLI commands."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from ticketpilot.app import app
from ticketpilot.core.config import Config
from ticketpilot.workflow.errors import CollaboratorUnavailable, WorkflowBusy
from ticketpilot.workflow.models import (
    AnalysisResult,
    ImplementationResult,
    ImplementationStatus,
    ImplementationStep,
    RejectionReason,
    TransitionResult,
    WorkflowPhase,
)
from ticketpilot.workflow.orchestrator import PendingAnalyses
from ticketpilot.workflow.phase_machine import PhaseRecord, PhaseStore

runner = CliRunner()


@pytest.fixture
def xdg_home(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("XDG_CONFIG_HOME", str(Path(tmpdir) / "config"))
        monkeypatch.setenv("XDG_STATE_HOME", str(Path(tmpdir) / "state"))
        yield Path(tmpdir)


@pytest.fixture
def fake_config():
    config = MagicMock()
    config.get.side_effect = lambda key, default=None: default
    return config


def _analysis():
    return AnalysisResult(
        ticket_id="PROJ-7",
        estimated_effort_hours=2,
        implementation_plan=[ImplementationStep(order=1, description="Add cache")],
    )


class TestInitCommand:
    """Test the init command."""

    def test_show_default_config(self, xdg_home):
        result = runner.invoke(app, ["init", "--show"])

        assert result.exit_code == 0
        assert "Default configuration" in result.output
        assert not Config().exists()

    def test_creates_config_once(self, xdg_home):
        first = runner.invoke(app, ["init"])
        second = runner.invoke(app, ["init"])

        assert first.exit_code == 0
        assert Config().exists()
        assert second.exit_code == 1
        assert "already exists" in second.output

    def test_force_overwrites(self, xdg_home):
        runner.invoke(app, ["init"])
        Config().config_file.write_text("[jira]\n")

        result = runner.invoke(app, ["init", "--force"])

        assert result.exit_code == 0
        assert "[workflow]" in Config().config_file.read_text()


class TestStatusCommand:
    """Test the status command."""

    def test_requires_config(self, xdg_home):
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "Configuration not found" in result.output

    def test_no_runs(self, xdg_home):
        Config().create_default()

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "No workflow runs recorded" in result.output

    def test_lists_runs(self, xdg_home):
        config = Config()
        config.create_default()
        PhaseStore(config.phase_state_file).put(
            "PROJ-7",
            PhaseRecord(
                phase=WorkflowPhase.AWAITING_APPROVAL,
                run_id="abc123",
                updated_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
            ),
        )
        PendingAnalyses(config.analyses_dir).put(_analysis())

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "PROJ-7" in result.output
        assert "AwaitingApproval" in result.output
        assert "30%" in result.output

    def test_yaml_output(self, xdg_home):
        config = Config()
        config.create_default()
        PhaseStore(config.phase_state_file).put(
            "PROJ-7",
            PhaseRecord(
                phase=WorkflowPhase.FAILED,
                run_id="abc123",
                updated_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
            ),
        )

        result = runner.invoke(app, ["status", "PROJ-7", "--yaml"])

        assert result.exit_code == 0
        assert "PROJ-7:" in result.output
        assert "phase: Failed" in result.output
        assert "pending_analysis: null" in result.output

    def test_unknown_ticket(self, xdg_home):
        Config().create_default()

        result = runner.invoke(app, ["status", "PROJ-404"])

        assert result.exit_code == 1
        assert "No workflow run found" in result.output


class TestAnalyzeCommand:
    """Test the analyze command."""

    @patch("ticketpilot.commands.analyze.build_orchestrator")
    @patch("ticketpilot.commands.analyze.load_config")
    def test_prints_analysis(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.start.return_value = _analysis()

        result = runner.invoke(app, ["analyze", "PROJ-7"])

        assert result.exit_code == 0
        assert "TECHNICAL ANALYSIS" in result.output
        assert "ticketpilot approve PROJ-7" in result.output
        mock_build.return_value.start.assert_called_once_with("PROJ-7")

    @patch("ticketpilot.commands.analyze.build_orchestrator")
    @patch("ticketpilot.commands.analyze.load_config")
    def test_auto_approve_flag(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.start.return_value = _analysis()

        result = runner.invoke(app, ["analyze", "PROJ-7", "--auto-approve"])

        assert result.exit_code == 0
        settings = mock_build.call_args.kwargs["settings"]
        assert settings.auto_approve is True

    @patch("ticketpilot.commands.analyze.build_orchestrator")
    @patch("ticketpilot.commands.analyze.load_config")
    def test_refresh_flag_bypasses_cache(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.start.return_value = _analysis()

        result = runner.invoke(app, ["analyze", "PROJ-7", "--refresh"])

        assert result.exit_code == 0
        settings = mock_build.call_args.kwargs["settings"]
        assert settings.use_analysis_cache is False

    @patch("ticketpilot.commands.analyze.build_orchestrator")
    @patch("ticketpilot.commands.analyze.load_config")
    def test_busy_ticket_exits_with_error(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.start.side_effect = WorkflowBusy(
            "PROJ-7",
            TransitionResult(
                accepted=False,
                reason=RejectionReason.WORKFLOW_BUSY,
                message="Workflow already in progress for PROJ-7",
            ),
        )

        result = runner.invoke(app, ["analyze", "PROJ-7"])

        assert result.exit_code == 1
        assert "WorkflowBusy" in result.output

    @patch("ticketpilot.commands.analyze.build_orchestrator")
    @patch("ticketpilot.commands.analyze.load_config")
    def test_collaborator_failure(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.start.side_effect = CollaboratorUnavailable(
            "claude", "Claude CLI not found in PATH"
        )

        result = runner.invoke(app, ["analyze", "PROJ-7"])

        assert result.exit_code == 1
        assert "Analysis failed" in result.output


class TestApproveCommand:
    """Test the approve command."""

    @patch("ticketpilot.commands.approve.build_orchestrator")
    @patch("ticketpilot.commands.approve.load_config")
    def test_successful_implementation(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.approve.return_value = ImplementationResult(
            ticket_id="PROJ-7",
            branch_name="feature/PROJ-7-add-order-cache",
            status=ImplementationStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc),
        )

        result = runner.invoke(app, ["approve", "PROJ-7"])

        assert result.exit_code == 0
        assert "IMPLEMENTATION COMPLETED" in result.output

    @patch("ticketpilot.commands.approve.build_orchestrator")
    @patch("ticketpilot.commands.approve.load_config")
    def test_failed_implementation_exits_one(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.approve.return_value = ImplementationResult(
            ticket_id="PROJ-7",
            status=ImplementationStatus.TEST_FAILED,
            completed_at=datetime.now(timezone.utc),
        )

        result = runner.invoke(app, ["approve", "PROJ-7"])

        assert result.exit_code == 1
        assert "IMPLEMENTATION FAILED" in result.output


class TestCancelCommand:
    """Test the cancel command."""

    @patch("ticketpilot.commands.cancel.build_orchestrator")
    @patch("ticketpilot.commands.cancel.load_config")
    def test_cancel_with_reason(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config

        result = runner.invoke(app, ["cancel", "PROJ-7", "--reason", "Requirements changed"])

        assert result.exit_code == 0
        mock_build.return_value.cancel.assert_called_once_with("PROJ-7", "Requirements changed")


class TestReviseCommand:
    """Test the revise command."""

    @patch("ticketpilot.commands.revise.build_orchestrator")
    @patch("ticketpilot.commands.revise.load_config")
    def test_prints_revised_analysis(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.revise.return_value = _analysis()
        mock_build.return_value.settings.auto_approve = False

        result = runner.invoke(app, ["revise", "PROJ-7", "-f", "Use Redis instead"])

        assert result.exit_code == 0
        assert "TECHNICAL ANALYSIS" in result.output
        assert "ticketpilot approve PROJ-7" in result.output
        mock_build.return_value.revise.assert_called_once_with("PROJ-7", "Use Redis instead")

    def test_feedback_is_required(self):
        result = runner.invoke(app, ["revise", "PROJ-7"])

        assert result.exit_code == 2

    @patch("ticketpilot.commands.revise.build_orchestrator")
    @patch("ticketpilot.commands.revise.load_config")
    def test_empty_feedback(self, mock_load_config, mock_build, fake_config):
        mock_load_config.return_value = fake_config
        mock_build.return_value.revise.side_effect = ValueError(
            "Revision feedback must not be empty"
        )

        result = runner.invoke(app, ["revise", "PROJ-7", "--feedback", " "])

        assert result.exit_code == 1
        assert "must not be empty" in result.output


class TestSearchCommand:
    """Test the search command."""

    @patch("ticketpilot.commands.search.build_tracker")
    @patch("ticketpilot.commands.search.load_config")
    def test_no_results(self, mock_load_config, mock_build_tracker):
        mock_build_tracker.return_value.search.return_value = []

        result = runner.invoke(app, ["search", "project = PROJ", "-n", "5"])

        assert result.exit_code == 0
        assert "No tickets found" in result.output
        mock_build_tracker.return_value.search.assert_called_once_with(
            "project = PROJ", max_results=5
        )
