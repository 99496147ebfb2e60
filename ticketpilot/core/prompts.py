"""Prompt construction for Claude CLI invocation."""

import json

from ticketpilot.core.context import ProjectContext
from ticketpilot.workflow.models import AnalysisResult, Ticket

ANALYSIS_SCHEMA = {
    "complexity": "Low | Medium | High | VeryHigh",
    "estimated_effort_hours": 4,
    "affected_files": [{"path": "src/app/service.py", "change_type": "Create | Modify | Delete"}],
    "required_changes": [
        {"component": "UserService", "description": "...", "category": "Controller | Service | Model | Other"}
    ],
    "technical_impact": {
        "has_breaking_changes": False,
        "requires_migration": False,
        "new_dependencies": ["package-name"],
    },
    "risks": [{"description": "...", "severity": "Low | Medium | High | Critical", "mitigation": "..."}],
    "opportunities": [{"description": "...", "type": "Refactoring"}],
    "implementation_plan": [{"order": 1, "description": "..."}],
    "validation_criteria": [{"description": "...", "type": "UnitTest | ManualTest | Other"}],
}

CHANGE_SET_SCHEMA = {
    "explanation": "Short summary of the change",
    "files": [{"path": "src/app/service.py", "action": "Create | Modify | Delete", "content": "full file content"}],
}


class PromptBuilder:
    """Constructs Claude CLI prompts for ticket analysis and implementation.

    Project-specific instructions are appended when the repository ships
    .claude/ticketpilot/analyze.md or .claude/ticketpilot/implement.md.
    """

    def __init__(self, context: ProjectContext):
        """Initialize prompt builder with project context for reading instruction files.

        Args:
            context: ProjectContext locating the repository and its .claude dir
        """
        self.context = context

    def _project_instructions(self, name: str) -> str:
        instructions = self.context.instructions_file(name)
        if instructions is None:
            return ""
        return f"\n## Project Instructions\n\n{instructions.read_text()}\n"

    @staticmethod
    def _feedback_block(feedback: str) -> str:
        if not feedback:
            return ""
        return (
            "## Feedback on the Previous Analysis\n\n"
            f"{feedback}\n\n"
            "The previous analysis was rejected. Address this feedback in the new one.\n\n"
        )

    @staticmethod
    def _ticket_block(ticket: Ticket) -> str:
        labels = ", ".join(ticket.labels) if ticket.labels else "none"
        return (
            f"**Ticket:** {ticket.id} - {ticket.title}\n"
            f"**Type:** {ticket.type}\n"
            f"**Priority:** {ticket.priority}\n"
            f"**Labels:** {labels}\n\n"
            f"### Description\n\n{ticket.description or '(no description)'}\n"
        )

    def build_analysis(self, ticket: Ticket, feedback: str = "") -> str:
        """Construct the prompt asking for a technical analysis of the ticket.

        Args:
            ticket: Ticket fetched from the tracker
            feedback: Reviewer feedback the new analysis must address

        Returns:
            Complete prompt string for Claude CLI execution
        """
        return f"""You are a senior engineer analyzing a ticket before implementation.

Repository root: {self.context.project_root}

{self._ticket_block(ticket)}
{self._feedback_block(feedback)}## Your Task

Read the relevant code in the repository and produce a technical analysis:
affected files, required changes per component, technical impact, risks
with mitigations, improvement opportunities, an ordered implementation plan
(orders 1..n) and validation criteria. Do NOT modify any file.
{self._project_instructions("analyze")}
## Output Requirements

Output a single JSON object with this structure:

```json
{json.dumps(ANALYSIS_SCHEMA, indent=2)}
```

The JSON MUST be valid and parseable.
"""

    def build_implementation(self, ticket: Ticket, analysis: AnalysisResult) -> str:
        """Construct the prompt asking for the change set implementing an approved plan.

        Args:
            ticket: Ticket fetched from the tracker
            analysis: Approved analysis of the ticket

        Returns:
            Complete prompt string for Claude CLI execution
        """
        plan = "\n".join(f"{step.order}. {step.description}" for step in analysis.implementation_plan)
        criteria = "\n".join(f"- {c.description}" for c in analysis.validation_criteria)
        files = "\n".join(
            f"- {f.path} ({f.change_type.value})" for f in analysis.affected_files
        )
        return f"""You are a senior engineer implementing an approved ticket.

Repository root: {self.context.project_root}

{self._ticket_block(ticket)}
### Approved Implementation Plan

{plan or "(no explicit plan)"}

### Affected Files

{files or "(not identified)"}

### Validation Criteria

{criteria or "(none)"}
{self._project_instructions("implement")}
## Output Requirements

Do NOT write files yourself. Output a single JSON object listing every file
to create, modify or delete, with the complete new content for created and
modified files:

```json
{json.dumps(CHANGE_SET_SCHEMA, indent=2)}
```

The JSON MUST be valid and parseable.
"""
