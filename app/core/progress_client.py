"""Consumer side of the bulk progress stream.

``ProgressStreamClient`` follows ``GET /import/progress/<sessionId>`` on a
reader thread and hands everything the caller needs to show through a
``queue.Queue`` of ``StreamMessage`` objects:

    client = ProgressStreamClient("http://localhost:4000", session_id)
    client.start()
    for message in client.messages():
        if message.kind == "event":
            render(message.event, message.data)

Transport failures before the server reported an outcome are retried with
exponential backoff on the same session id. A terminal event (``complete``,
``error``, ``close``) or exhausted retries end the stream for good.
"""
from __future__ import annotations
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from app.core.backoff import Backoff

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"complete", "error", "close"})

STALL_TIMEOUT = 60.0
MAX_RECONNECTS = 3


class StreamState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECEIVING = "receiving"
    STALLED = "stalled"
    CLOSED = "closed"


TRANSITIONS = {
    StreamState.CONNECTING: {StreamState.OPEN, StreamState.CONNECTING, StreamState.CLOSED},
    StreamState.OPEN: {StreamState.RECEIVING, StreamState.STALLED, StreamState.CONNECTING, StreamState.CLOSED},
    StreamState.RECEIVING: {StreamState.STALLED, StreamState.CONNECTING, StreamState.CLOSED},
    StreamState.STALLED: {StreamState.RECEIVING, StreamState.CONNECTING, StreamState.CLOSED},
    StreamState.CLOSED: set(),
}


class StreamTransportError(Exception):
    """The connection failed or ended before a terminal event."""


@dataclass(frozen=True)
class StreamMessage:
    """One item for the UI layer.

    ``kind`` is ``event`` (a server event, see ``event``/``data``),
    ``state`` (connection state change), ``stalled`` (no events for a
    while, connection kept) or ``closed`` (last message of the stream).
    """
    kind: str
    event: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


class ProgressStreamClient:
    """Follow one session's Server-Sent Events stream with reconnects."""

    def __init__(
        self,
        base_url: str,
        session_id: str,
        *,
        max_reconnects: int = MAX_RECONNECTS,
        backoff: Optional[Backoff] = None,
        stall_timeout: float = STALL_TIMEOUT,
        connect_timeout: float = 10.0,
        read_timeout: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = f"{base_url.rstrip('/')}/import/progress/{session_id}"
        self.session_id = session_id
        self.max_reconnects = max_reconnects
        self.backoff = backoff or Backoff(base=1.0, cap=30.0)
        self.stall_timeout = stall_timeout
        self.timeout = (connect_timeout, read_timeout)
        self._clock = clock
        self._sleep = sleep

        self.state = StreamState.CONNECTING
        self.retries = 0
        self.history: List[StreamState] = [StreamState.CONNECTING]
        self.outcome: Optional[str] = None
        self._messages: "queue.Queue[StreamMessage]" = queue.Queue()
        self._stop = threading.Event()
        self._response = None
        self._thread: Optional[threading.Thread] = None
        self._last_event = 0.0

    # ─────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────
    def start(self) -> "ProgressStreamClient":
        """Run the reader on a daemon thread."""
        self._thread = threading.Thread(target=self.run, name=f"progress-{self.session_id[:8]}", daemon=True)
        self._thread.start()
        return self

    def run(self) -> None:
        """Read the stream until a terminal event, exhausted retries or ``close()``."""
        while not self._stop.is_set():
            try:
                self._consume()
            except StreamTransportError as exc:
                if self._stop.is_set():
                    break
                if self.retries >= self.max_reconnects:
                    logger.error("Progress stream for %s lost after %d retries: %s", self.session_id, self.retries, exc)
                    self.outcome = "disconnected"
                    break
                delay = self.backoff.delay(self.retries)
                self.retries += 1
                logger.warning(
                    "Progress stream interrupted (%s), reconnecting in %.0fs (attempt %d/%d)",
                    exc, delay, self.retries, self.max_reconnects,
                )
                self._transition(StreamState.CONNECTING)
                self._sleep(delay)
                continue
            break
        self._finish()

    def messages(self, timeout: Optional[float] = None) -> Iterator[StreamMessage]:
        """Yield queued messages up to and including the ``closed`` one."""
        while True:
            try:
                message = self._messages.get(timeout=timeout)
            except queue.Empty:
                return
            yield message
            if message.kind == "closed":
                return

    def close(self) -> None:
        """Stop reading; no reconnect follows."""
        self._stop.set()
        response = self._response
        if response is not None:
            response.close()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ─────────────────────────────────────────────────────────────────────
    # State machine
    # ─────────────────────────────────────────────────────────────────────
    def _transition(self, new_state: StreamState) -> None:
        if new_state == self.state and new_state != StreamState.CONNECTING:
            return
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid stream transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        self._messages.put(StreamMessage("state", data={"state": new_state.value}))

    def _finish(self) -> None:
        if self.state == StreamState.CLOSED:
            return
        if self.outcome is None:
            self.outcome = "closed"
        self._transition(StreamState.CLOSED)
        self._messages.put(StreamMessage("closed", data={"outcome": self.outcome, "retries": self.retries}))

    # ─────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────
    def _consume(self) -> None:
        try:
            response = requests.get(
                self.url,
                stream=True,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StreamTransportError(str(exc))

        self._response = response
        try:
            if response.status_code == 404:
                logger.error("Progress stream for %s not found", self.session_id)
                self.outcome = "not_found"
                return
            if response.status_code != 200:
                raise StreamTransportError(f"HTTP {response.status_code}")

            self._transition(StreamState.OPEN)
            self.retries = 0
            self._last_event = self._clock()
            if self._read_frames(response.iter_lines(decode_unicode=True)):
                return
            if not self._stop.is_set():
                raise StreamTransportError("stream ended before a final event")
        except requests.RequestException as exc:
            if not self._stop.is_set():
                raise StreamTransportError(str(exc))
        finally:
            self._response = None
            response.close()

    def _read_frames(self, lines) -> bool:
        """Dispatch SSE frames; True once a terminal event was seen."""
        event_type = "message"
        data_lines: List[str] = []
        for raw in lines:
            if self._stop.is_set():
                return True
            line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if line.startswith(":"):
                self._check_stall()
                continue
            if line:
                name, _, value = line.partition(":")
                value = value[1:] if value.startswith(" ") else value
                if name == "event":
                    event_type = value
                elif name == "data":
                    data_lines.append(value)
                continue
            # blank line ends a frame
            if data_lines and self._dispatch(event_type, "\n".join(data_lines)):
                return True
            event_type, data_lines = "message", []
        return False

    def _dispatch(self, event_type: str, payload: str) -> bool:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("Ignoring malformed %s event payload: %.200s", event_type, payload)
            return False
        if not isinstance(data, dict):
            data = {"value": data}

        self._last_event = self._clock()
        self._transition(StreamState.RECEIVING)
        self._messages.put(StreamMessage("event", event_type, data))
        if event_type in TERMINAL_EVENTS:
            self.outcome = event_type
            return True
        return False

    def _check_stall(self) -> None:
        if self.state == StreamState.STALLED:
            return
        if self._clock() - self._last_event >= self.stall_timeout:
            logger.warning("No progress for %s in %.0fs", self.session_id, self.stall_timeout)
            self._transition(StreamState.STALLED)
            self._messages.put(StreamMessage(
                "stalled",
                data={"message": "No progress received recently; the operation may still be running"},
            ))
