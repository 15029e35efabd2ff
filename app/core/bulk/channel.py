"""Server side of the progress channel (Server-Sent Events).

Each session gets a ``ProgressChannel`` when it is created, so events
produced before the browser attaches are buffered. Events are delivered in
production order and nothing follows a terminal event.
"""
from __future__ import annotations
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from .errors import ChannelClosedError, SessionNotFoundError

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"complete", "error", "close"})
EVENT_TYPES = frozenset({"progress", "population_conflict", "invalid_population"}) | TERMINAL_EVENTS

KEEPALIVE_FRAME = ": keep-alive\n\n"


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    data: Dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def encode(self) -> str:
        """Render as an SSE frame."""
        return f"event: {self.type}\ndata: {json.dumps(self.data)}\n\n"


class ProgressChannel:
    """Thread-safe event queue for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._events: "queue.Queue[ProgressEvent]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self.closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: str, data: Dict[str, Any]) -> ProgressEvent:
        """Queue an event.

        Raises:
            ChannelClosedError: If a terminal event was already emitted.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type '{event_type}'")
        event = ProgressEvent(event_type, data)
        with self._lock:
            if self._closed:
                raise ChannelClosedError(
                    f"Channel for session {self.session_id} is closed; dropped '{event_type}' event"
                )
            if event.is_terminal:
                self._closed = True
                self.closed_at = time.time()
            self._events.put(event)
        return event

    def next_event(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next queued event, or None if none arrives within ``timeout``."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def frames(self, keepalive_interval: float = 25.0) -> Iterator[str]:
        """Yield SSE frames until the terminal event has been sent.

        A keep-alive comment is sent after every ``keepalive_interval``
        seconds without events.
        """
        while True:
            event = self.next_event(timeout=keepalive_interval)
            if event is None:
                yield KEEPALIVE_FRAME
                continue
            yield event.encode()
            if event.is_terminal:
                return


class ChannelRegistry:
    """Session id -> channel mapping.

    A channel is kept past its terminal event on purpose, so a subscriber that
    reconnects can still replay the final frame; it is dropped once that frame
    was delivered or ``retention_seconds`` after it was emitted.
    """

    def __init__(self, retention_seconds: float = 600.0):
        self._channels: Dict[str, ProgressChannel] = {}
        self._lock = threading.Lock()
        self.retention_seconds = retention_seconds

    def create(self, session_id: str) -> ProgressChannel:
        channel = ProgressChannel(session_id)
        with self._lock:
            self._prune()
            self._channels[session_id] = channel
        return channel

    def get(self, session_id: str) -> ProgressChannel:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is None:
            raise SessionNotFoundError(session_id)
        return channel

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._channels.pop(session_id, None)

    def stream(self, session_id: str, keepalive_interval: float = 25.0) -> Iterator[str]:
        """SSE frames for ``session_id``; the mapping is removed once the terminal event went out.

        Raises:
            SessionNotFoundError: Immediately, if the session has no channel.
        """
        channel = self.get(session_id)
        return self._stream(channel, keepalive_interval)

    def _stream(self, channel: ProgressChannel, keepalive_interval: float) -> Iterator[str]:
        delivered_terminal = False
        try:
            for frame in channel.frames(keepalive_interval):
                if frame.startswith("event: ") and frame.split("\n", 1)[0][7:] in TERMINAL_EVENTS:
                    delivered_terminal = True
                yield frame
        finally:
            # A disconnected subscriber may come back with the same session id
            if delivered_terminal:
                self.remove(channel.session_id)
                logger.debug("Progress channel for session %s removed", channel.session_id)

    def _prune(self) -> None:
        # Closed channels nobody came back for
        cutoff = time.time() - self.retention_seconds
        stale = [
            sid for sid, ch in self._channels.items()
            if ch.closed_at is not None and ch.closed_at < cutoff
        ]
        for sid in stale:
            del self._channels[sid]

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._channels
