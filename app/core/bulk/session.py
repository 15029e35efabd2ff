"""Bulk session state machine and in-memory registry."""
from __future__ import annotations
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import InvalidTransitionError, SessionNotFoundError


class Operation(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    MODIFY = "modify"
    DELETE = "delete"
    POPULATION_DELETE = "population-delete"


class SessionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CONFLICT = "awaiting-conflict-resolution"
    AWAITING_INVALID_POPULATION = "awaiting-invalid-population-resolution"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = {SessionState.CANCELLED, SessionState.COMPLETED, SessionState.FAILED}

TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.PENDING: {SessionState.RUNNING, SessionState.CANCELLED, SessionState.FAILED},
    SessionState.RUNNING: {
        SessionState.AWAITING_CONFLICT,
        SessionState.AWAITING_INVALID_POPULATION,
        SessionState.COMPLETED,
        SessionState.CANCELLED,
        SessionState.FAILED,
    },
    SessionState.AWAITING_CONFLICT: {SessionState.RUNNING, SessionState.CANCELLED, SessionState.FAILED},
    SessionState.AWAITING_INVALID_POPULATION: {SessionState.RUNNING, SessionState.CANCELLED, SessionState.FAILED},
}


@dataclass
class RecordDetail:
    """Outcome of one record."""
    index: int
    username: str
    outcome: Outcome
    status: str
    reason: str = ""
    remote_id: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None
    lookup_method: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "index": self.index,
            "username": self.username,
            "status": self.status,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.remote_id:
            data["pingOneId"] = self.remote_id
        if self.changes:
            data["changes"] = self.changes
        if self.lookup_method:
            data["lookupMethod"] = self.lookup_method
        return data


@dataclass
class BulkSession:
    """One running bulk job.

    Counts only change through ``record_outcome`` so that
    ``success + failed + skipped == processed <= total`` always holds.
    """
    operation: Operation
    total: int = 0
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = SessionState.PENDING
    population_id: Optional[str] = None
    population_name: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    error: Optional[str] = None
    # Settled with the result summary once the session is terminal
    future: Future = field(default_factory=Future, repr=False)
    known_population_ids: Set[str] = field(default_factory=set)
    # Rest of the job while parked at a prompt, and the prompt's expiry timer
    continuation: Optional[Callable[[Dict[str, Any]], None]] = field(default=None, repr=False)
    prompt_timer: Optional[threading.Timer] = field(default=None, repr=False)

    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[RecordDetail] = field(default_factory=list)
    tallies: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._prompt_generation = 0
        self._cancel_requested = False

    # ─────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: SessionState) -> None:
        with self._lock:
            if new_state not in TRANSITIONS.get(self.state, set()):
                raise InvalidTransitionError(
                    f"Session {self.session_id} cannot move from {self.state.value} to {new_state.value}"
                )
            self.state = new_state

    def set_total(self, total: int) -> None:
        with self._lock:
            if total < self.processed:
                raise ValueError("total cannot drop below processed")
            self.total = total

    def record_outcome(self, detail: RecordDetail) -> None:
        with self._lock:
            if self.processed >= self.total:
                raise InvalidTransitionError(
                    f"Session {self.session_id} already processed all {self.total} records"
                )
            self.processed += 1
            if detail.outcome is Outcome.SUCCESS:
                self.success += 1
            elif detail.outcome is Outcome.FAILED:
                self.failed += 1
            else:
                self.skipped += 1
            self.tallies[detail.status] = self.tallies.get(detail.status, 0) + 1
            self.details.append(detail)

    @property
    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {"success": self.success, "failed": self.failed, "skipped": self.skipped}

    def failed_details(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [d.to_dict() for d in self.details if d.outcome is Outcome.FAILED]

    # ─────────────────────────────────────────────────────────────────────
    # Resolution and cancellation
    # ─────────────────────────────────────────────────────────────────────
    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        with self._lock:
            if self.is_terminal:
                raise InvalidTransitionError(f"Session {self.session_id} already finished ({self.state.value})")
            self._cancel_requested = True

    @property
    def prompt_generation(self) -> int:
        return self._prompt_generation

    def open_prompt(self, state: SessionState) -> int:
        """Park the session in ``state`` and return the prompt's generation number."""
        with self._lock:
            self.transition(state)
            self._prompt_generation += 1
            return self._prompt_generation

    def claim_prompt(self, expected_state: SessionState, generation: Optional[int] = None) -> None:
        """Take the session out of ``expected_state`` so exactly one party acts on the prompt.

        Raises:
            InvalidTransitionError: The session is not awaiting this prompt
                (already answered, expired, cancelled, or another prompt).
        """
        with self._lock:
            if self.state is not expected_state or (generation is not None and generation != self._prompt_generation):
                raise InvalidTransitionError(
                    f"Session {self.session_id} is not awaiting this resolution (state: {self.state.value})"
                )
            self.state = SessionState.RUNNING

    def reopen_prompt(self, state: SessionState) -> None:
        """Undo a claim whose continuation could not be queued."""
        with self._lock:
            self.transition(state)

    # ─────────────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────────────
    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = {
                "sessionId": self.session_id,
                "operation": self.operation.value,
                "state": self.state.value,
                "total": self.total,
                "processed": self.processed,
                "counts": {"success": self.success, "failed": self.failed, "skipped": self.skipped},
                "populationId": self.population_id,
                "populationName": self.population_name,
            }
            if self.error:
                data["error"] = self.error
            return data

    def summary(self) -> Dict[str, Any]:
        """Snapshot plus per-status tallies and per-record details."""
        data = self.snapshot()
        with self._lock:
            data["results"] = dict(self.tallies)
            data["details"] = [d.to_dict() for d in self.details]
        return data


class SessionRegistry:
    """Active sessions by id, plus a short history of finished ones for status lookups."""

    def __init__(self, history_size: int = 50):
        self._active: Dict[str, BulkSession] = {}
        self._finished: "OrderedDict[str, BulkSession]" = OrderedDict()
        self._history_size = history_size
        self._lock = threading.Lock()

    def add(self, session: BulkSession) -> BulkSession:
        with self._lock:
            self._active[session.session_id] = session
        return session

    def get(self, session_id: str) -> BulkSession:
        """Return an active session.

        Raises:
            SessionNotFoundError: If no active session has this id.
        """
        with self._lock:
            session = self._active.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def lookup(self, session_id: str) -> BulkSession:
        """Return an active or recently finished session."""
        with self._lock:
            session = self._active.get(session_id) or self._finished.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def finish(self, session_id: str) -> None:
        with self._lock:
            session = self._active.pop(session_id, None)
            if session is None:
                return
            self._finished[session_id] = session
            while len(self._finished) > self._history_size:
                self._finished.popitem(last=False)

    def discard(self, session_id: str) -> None:
        """Forget a session that never started."""
        with self._lock:
            self._active.pop(session_id, None)

    def active(self) -> List[BulkSession]:
        with self._lock:
            return list(self._active.values())
