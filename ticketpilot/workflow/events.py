"""Progress event kinds delivered to ticket subscribers.

Events form a small tagged union. Each kind is a frozen dataclass and
to_payload() serializes any of them into the same JSON-ready shape, tagged
with a "type" field, at the transport boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from ticketpilot.workflow.models import (
    AnalysisResult,
    ImplementationResult,
    WorkflowPhase,
    utcnow,
)


@dataclass(frozen=True)
class ProgressUpdate:
    ticket_id: str
    phase: WorkflowPhase
    percentage: int
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Percentage must be within 0-100, got {self.percentage}")


@dataclass(frozen=True)
class AnalysisCompleted:
    ticket_id: str
    analysis: AnalysisResult
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ImplementationCompleted:
    ticket_id: str
    implementation: ImplementationResult
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class WorkflowErrorEvent:
    ticket_id: str
    phase: WorkflowPhase
    error_message: str
    timestamp: datetime = field(default_factory=utcnow)


ProgressEvent = Union[ProgressUpdate, AnalysisCompleted, ImplementationCompleted, WorkflowErrorEvent]

EVENT_TYPES = {
    ProgressUpdate: "ProgressUpdate",
    AnalysisCompleted: "AnalysisCompleted",
    ImplementationCompleted: "ImplementationCompleted",
    WorkflowErrorEvent: "WorkflowError",
}


def event_type(event: ProgressEvent) -> str:
    return EVENT_TYPES[type(event)]


def _implementation_payload(result: ImplementationResult) -> dict[str, Any]:
    return {
        "branch_name": result.branch_name,
        "status": result.status.value,
        "is_success": result.is_success,
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat() if result.completed_at else None,
        "files_created": len(result.created_files),
        "files_modified": len(result.modified_files),
        "files_deleted": len(result.deleted_files),
        "build_success": result.build_result.is_success if result.build_result else None,
        "tests_failed": result.test_result.failed_tests if result.test_result else None,
        "errors": [error.message for error in result.errors],
        "pull_request_url": result.pull_request_url,
        "pull_request_number": result.pull_request_number,
    }


def to_payload(event: ProgressEvent) -> dict[str, Any]:
    """Serialize an event to the dict published on the ticket channel."""
    payload: dict[str, Any] = {
        "type": event_type(event),
        "ticket_id": event.ticket_id,
        "timestamp": event.timestamp.isoformat(),
    }
    if isinstance(event, ProgressUpdate):
        payload.update(
            phase=event.phase.value,
            percentage=event.percentage,
            message=event.message,
        )
    elif isinstance(event, AnalysisCompleted):
        payload["analysis"] = event.analysis.to_dict()
    elif isinstance(event, ImplementationCompleted):
        payload["implementation"] = _implementation_payload(event.implementation)
    else:
        payload.update(phase=event.phase.value, error_message=event.error_message)
    return payload
