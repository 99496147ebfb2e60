"""Claude Code AI client subprocess wrapper.

This module provides the ClaudeClient class that spawns Claude Code in
print mode to analyze tickets and to produce change sets for approved
plans. Claude is asked to answer with a single JSON object; the client
extracts that object from stdout and converts it into AnalysisResult or
ChangeSet values.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import uuid
from typing import Any

from ticketpilot.core.context import ProjectContext
from ticketpilot.core.prompts import PromptBuilder
from ticketpilot.workflow.errors import CollaboratorUnavailable
from ticketpilot.workflow.models import (
    AnalysisResult,
    ChangeSet,
    GeneratedFile,
    Ticket,
)

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```json\s*(.*?)```", re.DOTALL)


class ClaudeClient:
    """Spawns Claude Code as a subprocess for ticket analysis and implementation."""

    def __init__(
        self,
        context: ProjectContext,
        cli_command: str = "claude",
        timeout: int = 1800,
    ):
        """Initialize the client.

        Args:
            context: ProjectContext whose project root Claude runs in
            cli_command: Claude Code executable
            timeout: Seconds before a single invocation is abandoned
        """
        self.context = context
        self.cli_command = cli_command
        self.timeout = timeout
        self.prompts = PromptBuilder(context)

    def analyze(self, ticket: Ticket, feedback: str = "") -> AnalysisResult:
        """Ask Claude for a technical analysis of the ticket.

        Args:
            ticket: Ticket fetched from the tracker
            feedback: Reviewer feedback on a previous analysis, if any

        Raises:
            CollaboratorUnavailable: If Claude fails or returns no usable analysis
        """
        data = self._invoke(self.prompts.build_analysis(ticket, feedback))
        try:
            return AnalysisResult.from_dict(data, ticket_id=ticket.id)
        except (ValueError, KeyError, TypeError) as e:
            raise CollaboratorUnavailable("claude", f"Invalid analysis returned: {e}") from e

    def implement(self, ticket: Ticket, analysis: AnalysisResult) -> ChangeSet:
        """Ask Claude for the change set implementing an approved analysis.

        Raises:
            CollaboratorUnavailable: If Claude fails or returns no usable change set
        """
        data = self._invoke(self.prompts.build_implementation(ticket, analysis))
        files = data.get("files")
        if not isinstance(files, list):
            raise CollaboratorUnavailable("claude", "Change set is missing the 'files' list")

        generated = []
        for entry in files:
            if not isinstance(entry, dict) or not entry.get("path"):
                raise CollaboratorUnavailable("claude", f"Invalid change set entry: {entry!r}")
            generated.append(GeneratedFile.from_dict(entry))
        return ChangeSet(files=generated, explanation=data.get("explanation", ""))

    def _invoke(self, prompt: str) -> dict[str, Any]:
        """Run Claude in print mode and parse the JSON object it prints."""
        session_id = str(uuid.uuid4())
        cmd = [self.cli_command, "--print", "--session-id", session_id]
        logger.debug(f"Running {self.cli_command} (session {session_id})")

        try:
            result = subprocess.run(
                cmd,
                input=prompt,
                cwd=self.context.project_root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise CollaboratorUnavailable(
                "claude",
                "Claude CLI not found in PATH. "
                "Install Claude Code first: https://claude.com/claude-code",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise CollaboratorUnavailable(
                "claude", f"Claude timed out after {self.timeout} seconds"
            ) from e

        if result.returncode != 0:
            raise CollaboratorUnavailable(
                "claude",
                f"Claude subprocess failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
            )

        try:
            return self._parse_output(result.stdout)
        except ValueError as e:
            raise CollaboratorUnavailable("claude", f"Failed to parse JSON output: {e}") from e

    @staticmethod
    def _parse_output(stdout: str) -> dict[str, Any]:
        """Extract the JSON object from Claude's output.

        A ```json fenced block is preferred; otherwise the first decodable
        object in the text is used.

        Raises:
            ValueError: If no JSON object is found
        """
        for block in _JSON_FENCE.findall(stdout):
            try:
                data = json.loads(block)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data

        decoder = json.JSONDecoder()
        index = stdout.find("{")
        while index != -1:
            try:
                data, _ = decoder.raw_decode(stdout, index)
            except json.JSONDecodeError:
                index = stdout.find("{", index + 1)
                continue
            if isinstance(data, dict):
                return data
            index = stdout.find("{", index + 1)

        raise ValueError("No JSON object found in output")
