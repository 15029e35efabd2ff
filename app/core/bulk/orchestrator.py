"""Bulk job orchestrator.

Drives import, modify, delete and population-delete jobs through their
session state machine, in sequential batches against the PingOne API:

    pending -> running -> completed
                 |  ^
                 v  |  (resolution posted)
      awaiting-conflict-resolution / awaiting-invalid-population-resolution
                 |
                 v
         cancelled / failed

Jobs run on the import request queue; per-record calls of one batch run
concurrently on the API request queue. Progress is published on the
session's channel after every batch. Cancellation and population
prompts are observed at batch boundaries. A session waiting on a prompt
holds no queue slot: the rest of its job is queued again once the answer
is posted.

Exports do not need a session: they run on the export queue and return
the rendered file.
"""
from __future__ import annotations
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from app.config.settings import AppConfig
from app.config.store import SettingsStore
from app.core.csv_records import UserRecord, parse_csv
from app.core.pingone.client import PingOneClient
from app.core.pingone.exceptions import (
    AuthenticationError,
    CredentialsMissingError,
    GatewayTimeoutError,
    InvalidRegionError,
    PermissionDeniedError,
    PingOneError,
    RateLimitedError,
    UniquenessConflictError,
    UpstreamServerError,
)
from app.core.pingone.populations import PopulationService
from app.core.pingone.users import UserService
from app.core.request_queue import QueueFullError, RequestQueue
from scripts import audit

from .channel import ChannelRegistry
from .errors import (
    BulkError,
    ChannelClosedError,
    InvalidTransitionError,
    ResolutionTimeoutError,
    SessionNotFoundError,
    ValidationError,
)
from .export import FIELD_MODES, FORMATS, render_csv, render_json, shape_user
from .modify import build_create_payload, diff_user
from .session import (
    BulkSession,
    Operation,
    Outcome,
    RecordDetail,
    SessionRegistry,
    SessionState,
)

logger = logging.getLogger(__name__)

# Errors that end the whole session rather than a single record
FATAL_ERRORS = (CredentialsMissingError, InvalidRegionError, AuthenticationError, PermissionDeniedError)
TRANSPORT_ERRORS = (GatewayTimeoutError, UpstreamServerError, RateLimitedError, QueueFullError)

AUDIT_EVENTS = {
    Operation.IMPORT: "bulk_import",
    Operation.MODIFY: "bulk_modify",
    Operation.DELETE: "bulk_delete",
    Operation.POPULATION_DELETE: "bulk_population_delete",
}

PROMPT_STATES = (SessionState.AWAITING_CONFLICT, SessionState.AWAITING_INVALID_POPULATION)
# Resumed jobs run ahead of newly submitted ones
RESUME_PRIORITY = 10

RecordHandler = Callable[[BulkSession, UserRecord], RecordDetail]


@dataclass
class BulkOptions:
    """Submission parameters shared by the CSV-driven operations."""
    selected_population_id: str = ""
    selected_population_name: str = ""
    create_if_not_exists: bool = False
    default_enabled: bool = True
    generate_passwords: bool = False
    continue_on_conflict: bool = True
    operator: str = "web"


@dataclass
class ExportResult:
    fmt: str
    rows: List[Dict[str, Any]]
    ignored: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows)

    @property
    def content(self) -> str:
        return render_json(self.rows) if self.fmt == "json" else render_csv(self.rows)


class _Cancelled(Exception):
    """Raised inside a job when a cancellation is observed."""


class _Suspended(Exception):
    """Raised inside a job to park the session at a population prompt.

    ``resume`` is called with the posted resolution and runs the rest of
    the job once it is queued again.
    """

    def __init__(
        self,
        state: SessionState,
        event_type: str,
        payload: Dict[str, Any],
        resume: Callable[[Dict[str, Any]], None],
    ):
        super().__init__(event_type)
        self.state = state
        self.event_type = event_type
        self.payload = payload
        self.resume = resume


def _message(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc)


def _detail(record: UserRecord, outcome: Outcome, status: str, reason: str = "", **extra: Any) -> RecordDetail:
    return RecordDetail(index=record.index, username=record.label, outcome=outcome, status=status, reason=reason, **extra)


class BulkOrchestrator:
    """Owns bulk sessions from submission to their terminal event."""

    def __init__(
        self,
        client: PingOneClient,
        config: AppConfig,
        sessions: SessionRegistry,
        channels: ChannelRegistry,
        import_queue: RequestQueue,
        api_queue: RequestQueue,
        export_queue: RequestQueue,
        store: Optional[SettingsStore] = None,
        audit_sink: Callable[..., bool] = audit.safe_log_bulk_event,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.tokens = client.tokens
        self.config = config
        self.sessions = sessions
        self.channels = channels
        self.import_queue = import_queue
        self.api_queue = api_queue
        self.export_queue = export_queue
        self.store = store
        self.users = UserService(client)
        self.populations = PopulationService(client)
        self._audit = audit_sink
        self._sleep = sleep

    # ─────────────────────────────────────────────────────────────────────
    # Submission
    # ─────────────────────────────────────────────────────────────────────
    def submit_import(self, content: Union[str, bytes], options: BulkOptions) -> BulkSession:
        """Validate an import and queue it.

        Raises:
            ValidationError: Empty file, no usable rows, or no population resolvable.
            QueueFullError: The import queue is saturated.
        """
        records = self._parse(content)
        session = BulkSession(Operation.IMPORT, total=len(records), options=asdict(options))
        if options.selected_population_id:
            session.population_id = options.selected_population_id
            session.population_name = options.selected_population_name or None
        elif not all(r.population_id for r in records):
            session.population_id, session.population_name = self._fallback_population()
        return self._start(session, lambda: self._run_import(session, records))

    def submit_modify(self, content: Union[str, bytes], options: BulkOptions) -> BulkSession:
        records = self._parse(content)
        session = BulkSession(Operation.MODIFY, total=len(records), options=asdict(options))
        if options.selected_population_id:
            session.population_id = options.selected_population_id
        elif options.create_if_not_exists and not all(r.population_id for r in records):
            session.population_id, session.population_name = self._fallback_population()
        return self._start(session, lambda: self._run_batches(session, records, self._modify_record))

    def submit_delete(self, content: Union[str, bytes], population_id: str = "", operator: str = "web") -> BulkSession:
        records = self._parse(content)
        options = BulkOptions(selected_population_id=population_id, operator=operator)
        session = BulkSession(Operation.DELETE, total=len(records), options=asdict(options))
        session.population_id = population_id or None
        return self._start(session, lambda: self._run_batches(session, records, self._delete_record))

    def submit_population_delete(self, population_id: str, population_name: str = "", operator: str = "web") -> BulkSession:
        """Queue deletion of every user in a population.

        Raises:
            ValidationError: If no population id was given.
            NotFoundError: If the population does not exist.
        """
        if not population_id:
            raise ValidationError("populationId is required")
        population = self.populations.get(population_id)
        options = BulkOptions(selected_population_id=population_id, operator=operator)
        session = BulkSession(Operation.POPULATION_DELETE, options=asdict(options))
        session.population_id = population_id
        session.population_name = population.get("name") or population_name or None
        return self._start(session, lambda: self._run_population_delete(session))

    def _parse(self, content: Union[str, bytes]) -> List[UserRecord]:
        if not content or not content.strip():
            raise ValidationError("No file uploaded or the file is empty")
        records = parse_csv(content)
        if not records:
            raise ValidationError("CSV file contains no rows with a username or email")
        return records

    def _fallback_population(self) -> Tuple[str, Optional[str]]:
        """Settings default population, else the environment default.

        Raises:
            ValidationError: If neither resolves to a known population.
        """
        populations = self.populations.list()
        by_id = {p["id"]: p for p in populations if p.get("id")}
        stored = self.store.get("populationId") if self.store else None
        if stored and stored in by_id:
            return stored, by_id[stored].get("name")
        default = self.populations.default(populations)
        if default:
            return default["id"], default.get("name")
        raise ValidationError(
            "No population selected and no default population could be found. Please pick a population."
        )

    def _start(self, session: BulkSession, job: Callable[[], None]) -> BulkSession:
        self.sessions.add(session)
        self.channels.create(session.session_id)
        try:
            self.import_queue.enqueue(lambda: self._execute(session, job))
        except QueueFullError:
            self.sessions.discard(session.session_id)
            self.channels.remove(session.session_id)
            raise
        logger.info(
            "Queued %s session %s (%d records)",
            session.operation.value, session.session_id, session.total,
        )
        return session

    # ─────────────────────────────────────────────────────────────────────
    # Session control
    # ─────────────────────────────────────────────────────────────────────
    def resolve_conflict(self, session_id: str, use_csv_population: Any) -> None:
        """Answer a ``population_conflict`` prompt.

        Raises:
            ValidationError: ``useCsvPopulation`` is not a boolean.
            SessionNotFoundError: Unknown session.
            InvalidTransitionError: Session is not awaiting a conflict resolution.
        """
        if not isinstance(use_csv_population, bool):
            raise ValidationError("useCsvPopulation must be true or false")
        session = self.sessions.get(session_id)
        self._resume(session, SessionState.AWAITING_CONFLICT, {"useCsvPopulation": use_csv_population})

    def resolve_invalid_population(self, session_id: str, population_id: str, apply_to_all: bool = False) -> None:
        """Answer an ``invalid_population`` prompt with a replacement population."""
        if not population_id:
            raise ValidationError("selectedPopulationId is required")
        session = self.sessions.get(session_id)
        if apply_to_all and self.config.invalid_population_fallback != "all":
            raise ValidationError("Applying a replacement population to all records is disabled on this server")
        if session.known_population_ids and population_id not in session.known_population_ids:
            raise ValidationError(f"Population '{population_id}' does not exist in this environment")
        self._resume(
            session,
            SessionState.AWAITING_INVALID_POPULATION,
            {"selectedPopulationId": population_id, "applyToAll": bool(apply_to_all)},
        )

    def cancel(self, session_id: str) -> None:
        """Ask a session to stop at its next batch boundary.

        A session parked at a prompt holds no queue slot and is closed right away.
        """
        session = self.sessions.get(session_id)
        session.request_cancel()
        logger.info("Cancellation requested for session %s", session_id)
        for state in PROMPT_STATES:
            try:
                session.claim_prompt(state)
            except InvalidTransitionError:
                continue
            self._disarm_prompt(session)
            self._execute(session, lambda: None)
            return

    def status(self, session_id: str) -> Dict[str, Any]:
        return self.sessions.lookup(session_id).snapshot()

    def wait(self, session: BulkSession, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the session is terminal and return its result summary."""
        session.future.result(timeout=timeout)
        return self.result_summary(session)

    def result_summary(self, session: BulkSession) -> Dict[str, Any]:
        summary = session.summary()
        tallies = summary["results"]
        summary["results"] = {
            "total": session.total,
            "created": tallies.get("created", 0),
            "modified": tallies.get("modified", 0),
            "noChanges": tallies.get("no_changes", 0),
            "deleted": tallies.get("deleted", 0),
            "failed": session.failed,
            "skipped": session.skipped,
        }
        summary["success"] = session.state is SessionState.COMPLETED
        return summary

    # ─────────────────────────────────────────────────────────────────────
    # Job lifecycle
    # ─────────────────────────────────────────────────────────────────────
    def _execute(self, session: BulkSession, step: Callable[[], None]) -> None:
        """Run one step of a session's job: the first one, or the rest after a prompt."""
        parked = False
        try:
            if session.state is SessionState.PENDING:
                session.transition(SessionState.RUNNING)
                # Fail fast on bad credentials before any record is touched
                self._acquire_token()
            if session.cancel_requested:
                raise _Cancelled()
            step()
        except _Suspended as suspended:
            parked = self._park(session, suspended)
            if not parked:
                self._close_cancelled(session)
        except _Cancelled:
            self._close_cancelled(session)
        except (PingOneError, BulkError) as exc:
            self._fail(session, exc.message)
        except Exception as exc:
            logger.exception("Session %s crashed", session.session_id)
            self._fail(session, f"Unexpected error: {exc}")
        else:
            session.transition(SessionState.COMPLETED)
            logger.info(
                "Session %s completed: %s", session.session_id, session.counts,
            )
            self._emit(session, "complete", {
                "current": session.processed,
                "total": session.total,
                "message": f"{session.operation.value.capitalize()} completed: "
                           f"{session.success} succeeded, {session.failed} failed, {session.skipped} skipped",
                "counts": session.counts,
                "results": self.result_summary(session)["results"],
            })
        finally:
            if not parked:
                self._finalize(session)

    def _acquire_token(self) -> None:
        """Get a token, waiting out the token request interval like the gateway waits out a 429."""
        attempt = 0
        while True:
            try:
                self.tokens.get_access_token()
                return
            except RateLimitedError as exc:
                attempt += 1
                if attempt >= self.config.max_retries:
                    raise
                delay = max(self.client.backoff.delay(attempt - 1), exc.retry_after)
                logger.warning(
                    "Token request rate limited, retry %d/%d in %.1fs",
                    attempt, self.config.max_retries - 1, delay,
                )
                self._sleep(delay)

    def _close_cancelled(self, session: BulkSession) -> None:
        session.transition(SessionState.CANCELLED)
        logger.info("Session %s cancelled after %d/%d records", session.session_id, session.processed, session.total)
        self._emit(session, "close", {
            "reason": "cancelled",
            "current": session.processed,
            "total": session.total,
            "counts": session.counts,
        })

    def _finalize(self, session: BulkSession) -> None:
        self.sessions.finish(session.session_id)
        self._audit_session(session)
        if not session.future.done():
            session.future.set_result(self.result_summary(session))

    def _fail(self, session: BulkSession, message: str) -> None:
        session.error = message
        if not session.is_terminal:
            session.transition(SessionState.FAILED)
        logger.error("Session %s failed: %s", session.session_id, message)
        self._emit(session, "error", {
            "message": message,
            "details": session.failed_details(),
            "counts": session.counts,
        })

    def _emit(self, session: BulkSession, event_type: str, data: Dict[str, Any]) -> None:
        try:
            self.channels.get(session.session_id).emit(event_type, data)
        except (ChannelClosedError, SessionNotFoundError) as exc:
            logger.warning("Dropped %s event for session %s: %s", event_type, session.session_id, exc.message)

    def _emit_progress(self, session: BulkSession) -> None:
        self._emit(session, "progress", {
            "current": session.processed,
            "total": session.total,
            "message": f"Processed {session.processed} of {session.total} users",
            "counts": session.counts,
            "populationName": session.population_name,
            "populationId": session.population_id,
        })

    # ─────────────────────────────────────────────────────────────────────
    # Population prompts
    # ─────────────────────────────────────────────────────────────────────
    def _park(self, session: BulkSession, suspended: _Suspended) -> bool:
        """Publish a prompt and leave the session parked without a queue slot.

        Returns False when a cancellation arrived first and nothing was parked.
        """
        if session.cancel_requested:
            return False
        session.continuation = suspended.resume
        session.open_prompt(suspended.state)
        if session.cancel_requested:
            try:
                session.claim_prompt(suspended.state)
            except InvalidTransitionError:
                # cancel() claimed it and closes the session itself
                return True
            return False
        self._arm_prompt(session, suspended.state, suspended.event_type)
        self._emit(session, suspended.event_type, suspended.payload)
        logger.info("Session %s waiting for %s resolution", session.session_id, suspended.event_type)
        return True

    def _arm_prompt(self, session: BulkSession, state: SessionState, event_type: str) -> None:
        timer = threading.Timer(
            self.config.resolution_timeout,
            self._expire_prompt,
            args=(session, state, event_type, session.prompt_generation),
        )
        timer.daemon = True
        session.prompt_timer = timer
        timer.start()

    def _disarm_prompt(self, session: BulkSession) -> None:
        if session.prompt_timer is not None:
            session.prompt_timer.cancel()
            session.prompt_timer = None

    def _expire_prompt(self, session: BulkSession, state: SessionState, event_type: str, generation: int) -> None:
        try:
            session.claim_prompt(state, generation)
        except InvalidTransitionError:
            return
        minutes = self.config.resolution_timeout / 60

        def expired() -> None:
            raise ResolutionTimeoutError(f"No answer to the {event_type} prompt within {minutes:g} minutes")

        self._execute(session, expired)

    def _resume(self, session: BulkSession, state: SessionState, resolution: Dict[str, Any]) -> None:
        """Queue the rest of a parked job with the posted resolution.

        Raises:
            InvalidTransitionError: The session is not awaiting this prompt.
            QueueFullError: The import queue is saturated; the prompt stays open.
        """
        session.claim_prompt(state)
        continuation = session.continuation
        try:
            self.import_queue.enqueue(
                lambda: self._execute(session, lambda: continuation(resolution)),
                priority=RESUME_PRIORITY,
            )
        except QueueFullError:
            session.reopen_prompt(state)
            raise
        self._disarm_prompt(session)
        session.continuation = None
        logger.info("Session %s resumed after %s resolution", session.session_id, state.value)

    def _audit_session(self, session: BulkSession) -> None:
        event_type = AUDIT_EVENTS.get(session.operation)
        if not event_type:
            return
        self._audit(
            event_type,
            session.population_name or session.population_id or session.session_id,
            operator=session.options.get("operator", "web"),
            session_id=session.session_id,
            details={
                "state": session.state.value,
                "total": session.total,
                "processed": session.processed,
                "counts": session.counts,
                "error": session.error,
            },
            success=session.state is SessionState.COMPLETED,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Batch loop
    # ─────────────────────────────────────────────────────────────────────
    def _submit(self, task: Callable[[], RecordDetail]) -> Future:
        try:
            return self.api_queue.enqueue(task)
        except QueueFullError as exc:
            future: Future = Future()
            future.set_exception(exc)
            return future

    def _run_batches(
        self,
        session: BulkSession,
        records: List[UserRecord],
        handler: RecordHandler,
        before_batch: Optional[Callable[[BulkSession, List[UserRecord]], None]] = None,
        first: int = 0,
        failed_streak: int = 0,
    ) -> None:
        size = max(1, self.config.batch_size)
        continue_on_conflict = session.options.get("continue_on_conflict", True)

        for start in range(first, len(records), size):
            if session.cancel_requested:
                raise _Cancelled()
            if before_batch:
                try:
                    before_batch(session, records[start:])
                except _Suspended as suspended:
                    apply = suspended.resume

                    def resume(resolution: Dict[str, Any], start: int = start, streak: int = failed_streak) -> None:
                        apply(resolution)
                        self._run_batches(session, records, handler, before_batch, first=start, failed_streak=streak)

                    suspended.resume = resume
                    raise
            batch = records[start:start + size]
            logger.debug("Session %s: batch %d (%d records)", session.session_id, start // size + 1, len(batch))

            pending = [(record, self._submit(lambda r=record: handler(session, r))) for record in batch]
            abort: Optional[Exception] = None
            transport_failures = 0
            for record, future in pending:
                try:
                    detail = future.result()
                except UniquenessConflictError as exc:
                    if continue_on_conflict:
                        detail = _detail(record, Outcome.SKIPPED, "conflict", exc.message)
                    else:
                        detail = _detail(record, Outcome.FAILED, "conflict", exc.message)
                        abort = abort or BulkError(
                            f"User '{record.label}' already exists; stopping because continueOnConflict is off"
                        )
                except FATAL_ERRORS as exc:
                    detail = _detail(record, Outcome.FAILED, "failed", exc.message)
                    abort = abort or exc
                except TRANSPORT_ERRORS as exc:
                    detail = _detail(record, Outcome.FAILED, "failed", _message(exc))
                    transport_failures += 1
                except (PingOneError, BulkError) as exc:
                    detail = _detail(record, Outcome.FAILED, "failed", exc.message)
                except Exception as exc:
                    logger.exception("Session %s: record %d crashed", session.session_id, record.index)
                    detail = _detail(record, Outcome.FAILED, "failed", str(exc))
                session.record_outcome(detail)

            self._emit_progress(session)
            if abort is not None:
                raise abort

            failed_streak = failed_streak + 1 if transport_failures == len(batch) else 0
            if failed_streak >= self.config.max_failed_batches:
                raise BulkError(
                    f"PingOne could not be reached for {failed_streak} consecutive batches; stopping"
                )
            if start + size < len(records) and self.config.batch_delay_seconds > 0:
                self._sleep(self.config.batch_delay_seconds)

    # ─────────────────────────────────────────────────────────────────────
    # Import
    # ─────────────────────────────────────────────────────────────────────
    def _run_import(self, session: BulkSession, records: List[UserRecord]) -> None:
        names = {p["id"]: p.get("name", "") for p in self.populations.list() if p.get("id")}
        session.known_population_ids = set(names)
        if session.population_id and not session.population_name:
            session.population_name = names.get(session.population_id)

        selected = session.options.get("selected_population_id", "")
        csv_count = sum(1 for r in records if r.population_id)
        if selected and csv_count:
            def after_conflict(resolution: Dict[str, Any]) -> None:
                use_csv = resolution["useCsvPopulation"]
                logger.info(
                    "Session %s: conflict resolved, use %s population",
                    session.session_id, "CSV" if use_csv else "UI",
                )
                for record in records:
                    if not use_csv or not record.population_id:
                        record.population_id = selected
                self._import_batches(session, records)

            raise _Suspended(
                SessionState.AWAITING_CONFLICT,
                "population_conflict",
                {
                    "csvPopulationCount": csv_count,
                    "uiPopulationCount": len(records) - csv_count,
                    "uiSelectedPopulation": session.population_name or selected,
                    "message": (
                        f"The CSV file assigns a population to {csv_count} of {len(records)} users, "
                        f"and '{session.population_name or selected}' is selected. Which population should be used?"
                    ),
                    "sessionId": session.session_id,
                },
                after_conflict,
            )

        for record in records:
            if not record.population_id:
                record.population_id = session.population_id or ""
        self._import_batches(session, records)

    def _import_batches(self, session: BulkSession, records: List[UserRecord]) -> None:
        self._run_batches(session, records, self._import_record, before_batch=self._check_populations)

    def _check_populations(self, session: BulkSession, remaining: List[UserRecord]) -> None:
        """Prompt for a replacement when records about to go out carry unknown population ids."""
        known = session.known_population_ids
        if not known:
            return
        affected = [r for r in remaining if r.population_id not in known]
        if not affected:
            return
        invalid = sorted({r.population_id for r in affected})

        def replace(resolution: Dict[str, Any]) -> None:
            replacement = resolution["selectedPopulationId"]
            targets = remaining if resolution.get("applyToAll") else affected
            for record in targets:
                record.population_id = replacement
            logger.info(
                "Session %s: %d records moved to population %s", session.session_id, len(targets), replacement,
            )

        raise _Suspended(
            SessionState.AWAITING_INVALID_POPULATION,
            "invalid_population",
            {
                "invalidPopulations": invalid,
                "affectedUserCount": len(affected),
                "affectedUserIndexes": [r.index for r in affected],
                "message": (
                    f"CSV contains {len(invalid)} invalid population ID(s): {', '.join(invalid)}. "
                    "Please choose a valid population to use for these users."
                ),
                "sessionId": session.session_id,
            },
            replace,
        )

    def _import_record(self, session: BulkSession, record: UserRecord) -> RecordDetail:
        existing, method = self.users.find(record.username, record.email, record.population_id)
        if existing:
            return _detail(
                record, Outcome.SKIPPED, "skipped", "User already exists in the selected population",
                remote_id=existing.get("id"), lookup_method=method,
            )
        created = self.users.create(build_create_payload(
            record,
            record.population_id,
            default_enabled=session.options.get("default_enabled", True),
            generate_passwords=session.options.get("generate_passwords", False),
        ))
        return _detail(record, Outcome.SUCCESS, "created", remote_id=created.get("id"))

    # ─────────────────────────────────────────────────────────────────────
    # Modify / delete
    # ─────────────────────────────────────────────────────────────────────
    def _modify_record(self, session: BulkSession, record: UserRecord) -> RecordDetail:
        existing, method = self.users.find(record.username, record.email)
        if existing is None:
            if not session.options.get("create_if_not_exists"):
                return _detail(record, Outcome.SKIPPED, "not_found", "not found")
            population_id = record.population_id or session.population_id
            if not population_id:
                return _detail(record, Outcome.FAILED, "failed", "No population available to create the user in")
            created = self.users.create(build_create_payload(
                record,
                population_id,
                default_enabled=session.options.get("default_enabled", True),
                generate_passwords=session.options.get("generate_passwords", False),
            ))
            return _detail(
                record, Outcome.SUCCESS, "created", "User created because createIfNotExists was enabled",
                remote_id=created.get("id"),
            )

        changes = diff_user(record, existing)
        if not changes:
            return _detail(record, Outcome.SUCCESS, "no_changes", remote_id=existing.get("id"), lookup_method=method)
        self.users.update(existing["id"], changes)
        return _detail(
            record, Outcome.SUCCESS, "modified",
            remote_id=existing.get("id"), changes=changes, lookup_method=method,
        )

    def _delete_record(self, session: BulkSession, record: UserRecord) -> RecordDetail:
        existing, method = self.users.find(record.username, record.email, session.population_id)
        if existing is None:
            return _detail(record, Outcome.SKIPPED, "not_found", "User not found")
        self.users.delete(existing["id"])
        return _detail(record, Outcome.SUCCESS, "deleted", remote_id=existing["id"], lookup_method=method)

    def _run_population_delete(self, session: BulkSession) -> None:
        users = list(self.users.list_users(session.population_id))
        records = [
            UserRecord(index=i, username=u.get("username", ""), email=u.get("email", ""), extra={"id": u["id"]})
            for i, u in enumerate(users)
            if u.get("id")
        ]
        session.set_total(len(records))
        logger.info("Session %s: deleting %d users from population %s", session.session_id, len(records), session.population_id)
        self._run_batches(session, records, self._delete_by_id)

    def _delete_by_id(self, session: BulkSession, record: UserRecord) -> RecordDetail:
        self.users.delete(record.extra["id"])
        return _detail(record, Outcome.SUCCESS, "deleted", remote_id=record.extra["id"])

    # ─────────────────────────────────────────────────────────────────────
    # Export
    # ─────────────────────────────────────────────────────────────────────
    def export_users(
        self,
        population_id: str = "",
        fields: str = "basic",
        fmt: str = "csv",
        ignore_disabled: bool = False,
        operator: str = "web",
    ) -> ExportResult:
        """Run an export on the export queue and wait for the result.

        Raises:
            ValidationError: Unknown field mode or format.
            QueueFullError: The export queue is saturated.
        """
        if fields not in FIELD_MODES:
            raise ValidationError(f"fields must be one of {', '.join(FIELD_MODES)}")
        if fmt not in FORMATS:
            raise ValidationError(f"format must be one of {', '.join(FORMATS)}")
        future = self.export_queue.enqueue(
            lambda: self._export(population_id, fields, fmt, ignore_disabled, operator)
        )
        return future.result()

    def _export(self, population_id: str, fields: str, fmt: str, ignore_disabled: bool, operator: str) -> ExportResult:
        users = list(self.users.list_users(population_id or None))

        ignored: List[str] = []
        if ignore_disabled:
            kept = []
            for user in users:
                if user.get("enabled") is False:
                    ignored.append(user.get("username") or user.get("email") or user.get("id", ""))
                else:
                    kept.append(user)
            users = kept
            for username in ignored:
                self._audit(
                    "export_ignored_user", username, operator=operator,
                    details={"populationId": population_id, "reason": "disabled"},
                )

        if users and population_id and not users[0].get("population"):
            population = self.populations.get(population_id)
            for user in users:
                user["population"] = {"id": population_id, "name": population.get("name", "")}

        rows = [shape_user(user, fields) for user in users]
        self._audit(
            "export", population_id or "all-populations", operator=operator,
            details={"total": len(rows), "ignored": len(ignored), "fields": fields, "format": fmt},
        )
        logger.info("Exported %d users (%d disabled ignored)", len(rows), len(ignored))
        return ExportResult(fmt=fmt, rows=rows, ignored=ignored)
