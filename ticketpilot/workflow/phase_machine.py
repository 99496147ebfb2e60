"""Phase state machine guarding per-ticket workflow transitions.

This module provides the PhaseStore, an explicit keyed store holding the
current phase of every ticket, and the PhaseStateMachine, the only component
allowed to mutate it. Every accepted transition is committed atomically
together with exactly one progress event; rejected transitions leave the
store untouched and report why.

Legal transitions:
- None -> Analyzing (a new run; also replaces a terminal phase)
- Analyzing -> AwaitingApproval -> Implementing -> Building -> Testing -> Completed
- any non-terminal phase -> Failed
"""

from __future__ import annotations

import fcntl
import json
import logging
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from ticketpilot.workflow.broadcaster import ProgressBroadcaster
from ticketpilot.workflow.events import ProgressUpdate
from ticketpilot.workflow.models import (
    RejectionReason,
    TransitionResult,
    WorkflowPhase,
    utcnow,
)

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1

NON_TERMINAL_PHASES = frozenset(phase for phase in WorkflowPhase if not phase.is_terminal)

LEGAL_TRANSITIONS: frozenset[tuple[Optional[WorkflowPhase], WorkflowPhase]] = frozenset(
    {
        (None, WorkflowPhase.ANALYZING),
        (WorkflowPhase.ANALYZING, WorkflowPhase.AWAITING_APPROVAL),
        (WorkflowPhase.AWAITING_APPROVAL, WorkflowPhase.IMPLEMENTING),
        (WorkflowPhase.IMPLEMENTING, WorkflowPhase.BUILDING),
        (WorkflowPhase.BUILDING, WorkflowPhase.TESTING),
        (WorkflowPhase.TESTING, WorkflowPhase.COMPLETED),
    }
    | {(phase, WorkflowPhase.FAILED) for phase in NON_TERMINAL_PHASES}
)

PHASE_PROGRESS = {
    WorkflowPhase.ANALYZING: 5,
    WorkflowPhase.AWAITING_APPROVAL: 30,
    WorkflowPhase.IMPLEMENTING: 40,
    WorkflowPhase.BUILDING: 60,
    WorkflowPhase.TESTING: 75,
    WorkflowPhase.COMPLETED: 100,
    WorkflowPhase.FAILED: 100,
}

PHASE_MESSAGES = {
    WorkflowPhase.ANALYZING: "Analyzing ticket...",
    WorkflowPhase.AWAITING_APPROVAL: "Analysis completed. Awaiting approval.",
    WorkflowPhase.IMPLEMENTING: "Generating code...",
    WorkflowPhase.BUILDING: "Running build...",
    WorkflowPhase.TESTING: "Running tests...",
    WorkflowPhase.COMPLETED: "Implementation completed!",
    WorkflowPhase.FAILED: "Workflow failed.",
}


@dataclass(frozen=True)
class PhaseRecord:
    """Current phase of a ticket plus the token of the run owning it."""

    phase: WorkflowPhase
    run_id: str
    updated_at: datetime


class PhaseStore:
    """Keyed store of ticket id -> PhaseRecord.

    When a state file is given, the store loads it on construction and
    rewrites it atomically after every change. Several processes may share
    one state file: transaction() holds an exclusive lock on a sibling
    .lock file and reloads the file, so a check and the write that follows
    it see the latest state of every ticket. Callers must hold the owning
    state machine's lock while mutating.
    """

    def __init__(self, state_file: Optional[Path] = None):
        self.state_file = state_file
        self._records: dict[str, PhaseRecord] = {}
        self.refresh()

    @property
    def lock_file(self) -> Optional[Path]:
        if self.state_file is None:
            return None
        return self.state_file.with_name(f"{self.state_file.name}.lock")

    def get(self, ticket_id: str) -> Optional[PhaseRecord]:
        return self._records.get(ticket_id)

    def put(self, ticket_id: str, record: PhaseRecord) -> None:
        """Record a phase; the in-memory store changes only once the file is saved."""
        records = dict(self._records)
        records[ticket_id] = record
        self._save_state(records)
        self._records = records

    def snapshot(self) -> dict[str, PhaseRecord]:
        return dict(self._records)

    def refresh(self) -> None:
        """Reload the state file, picking up changes made by other processes."""
        if self.state_file is not None and self.state_file.exists():
            self._records = self._load()

    @contextmanager
    def transaction(self) -> Iterator[PhaseStore]:
        """Hold the state file lock with freshly loaded records.

        Uses fcntl.flock around the read-modify-write so that concurrent
        ticketpilot processes neither admit two runs of one ticket nor drop
        each other's tickets. In-memory stores need no file lock.
        """
        if self.state_file is None:
            yield self
            return

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "w") as lock_fd:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            self.refresh()
            yield self

    def _load(self) -> dict[str, PhaseRecord]:
        with open(self.state_file, "r") as f:
            state = json.load(f)

        if state.get("schema_version") != STATE_SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported state file schema: {state.get('schema_version')} "
                f"(expected {STATE_SCHEMA_VERSION})"
            )

        records = {
            ticket_id: PhaseRecord(
                phase=WorkflowPhase(data["phase"]),
                run_id=data["run_id"],
                updated_at=datetime.fromisoformat(data["updated_at"]),
            )
            for ticket_id, data in state.get("tickets", {}).items()
        }
        logger.debug(f"Loaded {len(records)} ticket phase(s) from {self.state_file}")
        return records

    def _save_state(self, records: dict[str, PhaseRecord]) -> None:
        """Save state to JSON atomically via temp file + rename."""
        if self.state_file is None:
            return

        state = {
            "schema_version": STATE_SCHEMA_VERSION,
            "tickets": {
                ticket_id: self._serialize_record(record)
                for ticket_id, record in records.items()
            },
        }

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=self.state_file.parent,
            delete=False,
            suffix=".json.tmp",
        ) as f:
            json.dump(state, f, indent=2)
            temp_path = f.name

        Path(temp_path).replace(self.state_file)
        logger.debug(f"State saved to {self.state_file}")

    @staticmethod
    def _serialize_record(record: PhaseRecord) -> dict[str, Any]:
        return {
            "phase": record.phase.value,
            "run_id": record.run_id,
            "updated_at": record.updated_at.isoformat(),
        }


class PhaseStateMachine:
    """Validates and commits per-ticket phase transitions.

    All mutation of the store goes through request_transition(). A single
    lock serializes transitions, so transitions of one ticket never run
    concurrently and the progress event of each commit is queued before the
    next commit can happen. With a file-backed store the check and the
    commit also run inside the store's file transaction, which extends the
    same guarantees to machines in other processes sharing the state file.
    """

    def __init__(self, store: PhaseStore, broadcaster: ProgressBroadcaster):
        self.store = store
        self.broadcaster = broadcaster
        self._lock = threading.Lock()

    def current_phase(self, ticket_id: str) -> Optional[WorkflowPhase]:
        record = self.record(ticket_id)
        return record.phase if record else None

    def record(self, ticket_id: str) -> Optional[PhaseRecord]:
        with self._lock:
            self.store.refresh()
            return self.store.get(ticket_id)

    def request_transition(
        self,
        ticket_id: str,
        expected_from: Optional[WorkflowPhase],
        to_phase: WorkflowPhase,
        message: Optional[str] = None,
    ) -> TransitionResult:
        """Move a ticket from expected_from to to_phase.

        Args:
            ticket_id: Ticket to transition
            expected_from: Phase the caller believes is current, or None to
                start a new run
            to_phase: Requested phase
            message: Progress message; defaults to the phase's standard text

        Returns:
            TransitionResult with accepted=True and the run id in metadata,
            or accepted=False with the rejection reason
        """
        event = ProgressUpdate(
            ticket_id=ticket_id,
            phase=to_phase,
            percentage=PHASE_PROGRESS[to_phase],
            message=message or PHASE_MESSAGES[to_phase],
        )

        with self._lock, self.store.transaction() as store:
            record = store.get(ticket_id)
            rejection = self._check(ticket_id, record, expected_from, to_phase)
            if rejection is not None:
                logger.warning(
                    f"Rejected transition for ticket {ticket_id}: "
                    f"{rejection.reason.value} - {rejection.message}"
                )
                return rejection

            if expected_from is None:
                run_id = uuid.uuid4().hex
            else:
                run_id = record.run_id

            new_record = PhaseRecord(phase=to_phase, run_id=run_id, updated_at=utcnow())
            store.put(ticket_id, new_record)
            self._log_transition(ticket_id, record.phase if record else None, to_phase)
            self.broadcaster.publish(event)

        return TransitionResult(
            accepted=True,
            message=f"{ticket_id}: {_label(expected_from)} -> {to_phase.value}",
            metadata={"run_id": run_id, "phase": to_phase.value},
        )

    def _check(
        self,
        ticket_id: str,
        record: Optional[PhaseRecord],
        expected_from: Optional[WorkflowPhase],
        to_phase: WorkflowPhase,
    ) -> Optional[TransitionResult]:
        current = record.phase if record else None

        if expected_from is None:
            if current is not None and not current.is_terminal:
                return _reject(
                    RejectionReason.WORKFLOW_BUSY,
                    f"Workflow already in progress for {ticket_id} (phase: {current.value})",
                    current,
                )
        else:
            if record is None:
                return _reject(
                    RejectionReason.UNKNOWN_TICKET,
                    f"No workflow run found for ticket {ticket_id}",
                    None,
                )
            if current != expected_from:
                if current.is_terminal:
                    return _reject(
                        RejectionReason.ILLEGAL_TRANSITION,
                        f"Workflow for {ticket_id} already finished as {current.value}; "
                        f"expected {expected_from.value}",
                        current,
                    )
                return _reject(
                    RejectionReason.WORKFLOW_BUSY,
                    f"Workflow already in progress for {ticket_id} "
                    f"(phase: {current.value}, expected {expected_from.value})",
                    current,
                )

        if (expected_from, to_phase) not in LEGAL_TRANSITIONS:
            return _reject(
                RejectionReason.ILLEGAL_TRANSITION,
                f"Illegal transition {_label(expected_from)} -> {to_phase.value} for {ticket_id}",
                current,
            )
        return None

    def _log_transition(
        self,
        ticket_id: str,
        old_phase: Optional[WorkflowPhase],
        new_phase: WorkflowPhase,
    ) -> None:
        logger.info(f"Ticket {ticket_id}: {_label(old_phase)} -> {new_phase.value}")


def _label(phase: Optional[WorkflowPhase]) -> str:
    return phase.value if phase else "none"


def _reject(
    reason: RejectionReason, message: str, current: Optional[WorkflowPhase]
) -> TransitionResult:
    return TransitionResult(
        accepted=False,
        reason=reason,
        message=message,
        metadata={"current_phase": current.value if current else None},
    )
