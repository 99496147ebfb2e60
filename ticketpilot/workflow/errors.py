"""Exception taxonomy for the ticket workflow engine.

Phase-machine rejections are returned as TransitionResult values by the
state machine itself; the orchestrator raises them to its callers as
IllegalTransition, WorkflowBusy or UnknownTicket. Aggregation verdicts are
never raised.
"""

from __future__ import annotations

from typing import Optional

from ticketpilot.workflow.models import TransitionResult


class TicketPilotError(Exception):
    """Base class for all ticketpilot errors."""

    pass


class TransitionRejected(TicketPilotError):
    """Raised when the phase state machine refuses a transition."""

    def __init__(self, ticket_id: str, result: TransitionResult):
        super().__init__(result.message)
        self.ticket_id = ticket_id
        self.result = result


class IllegalTransition(TransitionRejected):
    pass


class WorkflowBusy(TransitionRejected):
    pass


class UnknownTicket(TransitionRejected):
    pass


class CollaboratorUnavailable(TicketPilotError):
    """Raised when a tracker, VCS, AI or build call fails."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class TicketNotFoundError(TicketPilotError):
    """Raised when the ticket tracker has no ticket with the given id."""

    def __init__(self, ticket_id: str, message: Optional[str] = None):
        super().__init__(message or f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class NotificationDeliveryFailure(TicketPilotError):
    """Delivery of a progress event failed. Logged, never propagated."""

    def __init__(self, channel: str, event_type: str, cause: BaseException):
        super().__init__(f"Failed to deliver {event_type} on {channel}: {cause}")
        self.channel = channel
        self.event_type = event_type
        self.cause = cause
