"""Per-ticket progress broadcaster.

Events are partitioned by ticket: each ticket has a channel named
"ticket-{ticket_id}" and only the subscribers registered against that
ticket (plus the optional transport, on the same channel name) receive its
events.

Emission never blocks on delivery. An emitted event is appended to its
channel's queue and a drain task is handed to a thread pool when the channel
is idle. A channel has at most one drain task at a time, so events of one
ticket are delivered in emission order while different tickets drain in
parallel. Every delivery failure is caught, logged and counted; nothing
raised by a subscriber or the transport ever reaches the emitter.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ticketpilot.workflow.collaborators import Publisher
from ticketpilot.workflow.errors import NotificationDeliveryFailure
from ticketpilot.workflow.events import (
    AnalysisCompleted,
    ImplementationCompleted,
    ProgressEvent,
    ProgressUpdate,
    WorkflowErrorEvent,
    event_type,
    to_payload,
)
from ticketpilot.workflow.models import AnalysisResult, ImplementationResult, WorkflowPhase

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], None]

_subscription_ids = itertools.count(1)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it to unsubscribe()."""

    ticket_id: str
    callback: Subscriber
    id: int = field(default_factory=lambda: next(_subscription_ids))


@dataclass
class _Channel:
    ticket_id: str
    pending: deque = field(default_factory=deque)
    draining: bool = False

    @property
    def name(self) -> str:
        return ProgressBroadcaster.channel_name(self.ticket_id)


class ProgressBroadcaster:
    """Fans out progress, result and error events to ticket subscribers."""

    def __init__(self, transport: Optional[Publisher] = None, max_workers: int = 4):
        """Initialize the broadcaster.

        Args:
            transport: Optional remote transport receiving every payload on
                the ticket's channel name
            max_workers: Number of delivery threads shared by all channels
        """
        self.transport = transport
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ticketpilot-broadcast"
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._channels: dict[str, _Channel] = {}
        self._subscribers: dict[str, list[Subscription]] = {}
        self._in_flight = 0
        self._closed = False
        self.delivery_failures = 0

    @staticmethod
    def channel_name(ticket_id: str) -> str:
        return f"ticket-{ticket_id}"

    def subscribe(self, ticket_id: str, callback: Subscriber) -> Subscription:
        subscription = Subscription(ticket_id=ticket_id, callback=callback)
        with self._lock:
            self._subscribers.setdefault(ticket_id, []).append(subscription)
        logger.debug(f"Subscribed {subscription.id} to {self.channel_name(ticket_id)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.ticket_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.ticket_id, None)

    def subscriber_count(self, ticket_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(ticket_id, []))

    def emit(self, ticket_id: str, phase: WorkflowPhase, percentage: int, message: str) -> None:
        self.publish(ProgressUpdate(ticket_id, phase, percentage, message))

    def emit_analysis_completed(self, ticket_id: str, analysis: AnalysisResult) -> None:
        self.publish(AnalysisCompleted(ticket_id, analysis))

    def emit_implementation_completed(
        self, ticket_id: str, implementation: ImplementationResult
    ) -> None:
        self.publish(ImplementationCompleted(ticket_id, implementation))

    def emit_error(self, ticket_id: str, phase: WorkflowPhase, error_message: str) -> None:
        self.publish(WorkflowErrorEvent(ticket_id, phase, error_message))

    def publish(self, event: ProgressEvent) -> None:
        """Queue an already-built event for delivery. Never raises."""
        with self._lock:
            if self._closed:
                logger.warning(
                    f"Broadcaster closed, dropping {event_type(event)} for ticket {event.ticket_id}"
                )
                return

            channel = self._channels.get(event.ticket_id)
            if channel is None:
                channel = self._channels[event.ticket_id] = _Channel(event.ticket_id)
            channel.pending.append(event)
            self._in_flight += 1

            if channel.draining:
                return
            channel.draining = True
            try:
                self._executor.submit(self._drain, channel)
            except RuntimeError:
                logger.exception(f"Could not schedule delivery on {channel.name}")
                self._in_flight -= len(channel.pending)
                channel.pending.clear()
                channel.draining = False
                self._idle.notify_all()

    def _drain(self, channel: _Channel) -> None:
        """Deliver a channel's queued events in order until it is empty."""
        while True:
            with self._lock:
                if not channel.pending:
                    channel.draining = False
                    return
                event = channel.pending.popleft()
                subscribers = list(self._subscribers.get(channel.ticket_id, []))
            try:
                self._deliver(channel.name, event, subscribers)
            finally:
                with self._lock:
                    self._in_flight -= 1
                    self._idle.notify_all()

    def _deliver(
        self, channel_name: str, event: ProgressEvent, subscribers: list[Subscription]
    ) -> None:
        name = event_type(event)
        try:
            payload = to_payload(event)
        except Exception as e:
            self._record_failure(NotificationDeliveryFailure(channel_name, name, e))
            return

        for subscription in subscribers:
            try:
                subscription.callback(payload)
            except Exception as e:
                self._record_failure(NotificationDeliveryFailure(channel_name, name, e))

        if self.transport is not None:
            try:
                self.transport.publish(channel_name, payload)
            except Exception as e:
                self._record_failure(NotificationDeliveryFailure(channel_name, name, e))

        logger.debug(f"Delivered {name} on {channel_name} to {len(subscribers)} subscriber(s)")

    def _record_failure(self, failure: NotificationDeliveryFailure) -> None:
        with self._lock:
            self.delivery_failures += 1
        logger.error(str(failure), exc_info=failure.cause)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been delivered.

        Returns:
            True if all channels drained, False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver what is queued, then stop accepting events."""
        self.flush(timeout)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
