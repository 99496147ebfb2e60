"""Deterministic Markdown reports posted to the ticket tracker.

Every function here is a pure function of its arguments: the same input
always renders byte-identical text. The text is posted verbatim as tracker
comments and pull request bodies.

Rounding policy: coverage percentages and minute durations are truncated
toward zero. Coverage is computed in decimal arithmetic from the float's
shortest repr so that 0.29 renders as 29 and 0.855 as 85.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from ticketpilot.workflow.models import (
    AnalysisResult,
    ImplementationResult,
    Ticket,
    WorkflowPhase,
)

ANALYSIS_HEADER = "## 🔍 TECHNICAL ANALYSIS"
AWAITING_APPROVAL_MARKER = "⏸️ **Awaiting approval to proceed with the implementation.**"
COMPLETED_HEADER = "## 🚀 IMPLEMENTATION COMPLETED"
FAILED_HEADER = "## ❌ IMPLEMENTATION FAILED"
WORKFLOW_FAILED_HEADER = "## ❌ WORKFLOW FAILED"
BUILD_SUCCESS_MARKER = "✅ Success"
BUILD_FAILED_MARKER = "❌ Failed"


def coverage_percent(fraction: float) -> int:
    """Convert a coverage fraction in [0, 1] to a truncated whole percentage."""
    return int((Decimal(repr(fraction)) * 100).to_integral_value(rounding=ROUND_DOWN))


def duration_minutes(duration: timedelta) -> int:
    """Whole minutes of a duration, truncated toward zero."""
    return int(duration / timedelta(minutes=1))


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _render(lines: list[str]) -> str:
    return "\n".join(lines) + "\n"


def format_analysis(analysis: AnalysisResult) -> str:
    """Render an analysis as the tracker comment asking for approval.

    Optional sections are emitted only when they have content; the header,
    the complexity and estimate lines and the closing approval marker are
    always present.

    Args:
        analysis: Completed analysis result

    Returns:
        Markdown text ending with a newline
    """
    lines = [
        ANALYSIS_HEADER,
        "",
        f"**Ticket:** {analysis.ticket_id}",
        f"**Analyzed at:** {_as_utc(analysis.analyzed_at):%Y-%m-%d %H:%M} UTC",
        f"**Complexity:** {analysis.complexity.value}",
        f"**Estimate:** ~{analysis.estimated_effort_hours}h",
        "",
    ]

    if analysis.affected_files:
        lines.append("### 📁 Affected Files")
        for affected in analysis.affected_files:
            lines.append(f"- `{affected.path}` - {affected.change_type.value}")
        lines.append("")

    if analysis.required_changes:
        lines.append("### 🔧 Required Changes")
        for change in analysis.required_changes:
            lines.append(f"- **{change.component}**: {change.description}")
        lines.append("")

    impact = analysis.technical_impact
    impact_lines = []
    if impact.has_breaking_changes:
        impact_lines.append("- ⚠️ **BREAKING CHANGE** detected")
    if impact.requires_migration:
        impact_lines.append("- 🗄️ Requires database migration")
    if impact.new_dependencies:
        impact_lines.append(f"- 📦 New dependencies: {', '.join(impact.new_dependencies)}")
    for risk in analysis.risks:
        line = f"- [{risk.severity.value}] {risk.description}"
        if risk.mitigation:
            line += f" (mitigation: {risk.mitigation})"
        impact_lines.append(line)
    if impact_lines:
        lines.append("### ⚠️ Impacts and Risks")
        lines.extend(impact_lines)
        lines.append("")

    if analysis.opportunities:
        lines.append("### ✨ Improvement Opportunities")
        for opportunity in analysis.opportunities:
            lines.append(f"- {opportunity.description}")
        lines.append("")

    if analysis.implementation_plan:
        lines.append("### 📋 Implementation Plan")
        for step in analysis.implementation_plan:
            lines.append(f"{step.order}. {step.description}")
        lines.append("")

    if analysis.validation_criteria:
        lines.append("### ✅ Validation Criteria")
        for criterion in analysis.validation_criteria:
            lines.append(f"- [ ] {criterion.description}")
        lines.append("")

    lines.append("---")
    lines.append(AWAITING_APPROVAL_MARKER)
    return _render(lines)


def format_implementation_summary(result: ImplementationResult) -> str:
    """Render the final implementation summary posted to the tracker.

    Args:
        result: Implementation result of a run that reached a terminal phase

    Returns:
        Markdown text ending with a newline
    """
    lines = [
        COMPLETED_HEADER if result.is_success else FAILED_HEADER,
        "",
        f"**Branch:** `{result.branch_name}`",
        f"**Status:** {result.status.value}",
    ]
    if result.duration is not None:
        lines.append(f"**Duration:** {duration_minutes(result.duration)} minutes")
    lines.append("")

    lines.extend(
        [
            "### 📝 Changes",
            f"- Files created: {len(result.created_files)}",
            f"- Files modified: {len(result.modified_files)}",
            f"- Files deleted: {len(result.deleted_files)}",
            "",
        ]
    )

    if result.build_result is not None:
        lines.append("### 🔨 Build")
        if result.build_result.is_success:
            lines.append(f"- Status: {BUILD_SUCCESS_MARKER}")
        else:
            lines.append(f"- Status: {BUILD_FAILED_MARKER}")
            for error in result.build_result.errors:
                lines.append(f"  - {error}")
        lines.append("")

    tests = result.test_result
    if tests is not None:
        lines.extend(
            [
                "### 🧪 Tests",
                f"- Total: {tests.total_tests}",
                f"- Passed: {tests.passed_tests}",
                f"- Failed: {tests.failed_tests}",
                f"- Skipped: {tests.skipped_tests}",
            ]
        )
        if tests.code_coverage is not None:
            lines.append(f"- Coverage: {coverage_percent(tests.code_coverage)}%")
        lines.append("")

    if result.pull_request_number is not None:
        lines.append("### 🔗 Pull Request")
        lines.append(f"[PR #{result.pull_request_number}]({result.pull_request_url or ''})")
        lines.append("")

    if result.errors:
        lines.append("### ❌ Errors")
        for error in result.errors:
            lines.append(f"- {error.message}")
        lines.append("")

    return _render(lines)


def format_failure_report(ticket_id: str, phase: Optional[WorkflowPhase], error: str) -> str:
    """Render the report for a run that failed without an implementation result."""
    lines = [
        WORKFLOW_FAILED_HEADER,
        "",
        f"**Ticket:** {ticket_id}",
        f"**Failed during:** {phase.value if phase else 'Unknown'}",
        "",
        "### ❌ Error",
        error,
        "",
    ]
    return _render(lines)


def format_pull_request_body(
    ticket: Ticket, result: ImplementationResult, analysis: Optional[AnalysisResult] = None
) -> str:
    """Render the pull request description for an implemented ticket."""
    lines = [f"## 🎫 {ticket.id}: {ticket.title}", ""]

    if ticket.url:
        lines.extend(["### 🔗 Ticket", f"[{ticket.id}]({ticket.url})", ""])

    lines.append("### ✨ Changes")
    for change in result.created_files:
        lines.append(f"- ➕ `{change.path}` (+{change.lines_added})")
    for change in result.modified_files:
        lines.append(f"- ✏️ `{change.path}` (+{change.lines_added} -{change.lines_removed})")
    for path in result.deleted_files:
        lines.append(f"- ❌ `{path}`")
    lines.append("")

    tests = result.test_result
    breaking = analysis.technical_impact.has_breaking_changes if analysis else False
    lines.extend(
        [
            "### ✅ Checklist",
            f"- [{'x' if tests is not None and tests.total_tests > 0 else ' '}] Unit tests created/updated",
            f"- [{'x' if tests is None or tests.all_passed else ' '}] Tests passing",
            f"- [{' ' if breaking else 'x'}] No breaking changes",
            "",
        ]
    )

    if tests is not None:
        lines.extend(
            [
                "### 🧪 Test Results",
                f"- Total: {tests.total_tests}",
                f"- Passed: {tests.passed_tests}",
                f"- Failed: {tests.failed_tests}",
                "",
            ]
        )

    return _render(lines)
