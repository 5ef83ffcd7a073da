"""
Progress events published by session state machines.

The state machine publishes to a ProgressChannel without knowing who is
listening. The orchestrator subscribes to fold session deltas into batch
counters; the CLI and telemetry subscribe to report progress.
"""

import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional

from qbank.ingest.models import ErrorKind, Stage, utcnow


class EventKind:
    """Event type names (stable, used in telemetry output)."""

    STAGE_CHANGED = "stage_changed"
    UNITS_PROCESSED = "units_processed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANDIDATE_INSERTED = "candidate_inserted"
    CANDIDATE_DUPLICATE = "candidate_duplicate"
    CANDIDATE_INVALID = "candidate_invalid"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_PAUSED = "session_paused"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_REOPENED = "session_reopened"


@dataclass
class SessionEvent:
    """A change in one session, with the batch counter deltas it implies."""

    kind: str
    session_id: uuid.UUID
    job_id: uuid.UUID
    stage: Stage
    processed_units: int = 0
    total_units: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    deltas: dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "kind": self.kind,
            "session_id": str(self.session_id),
            "job_id": str(self.job_id),
            "stage": self.stage.value,
            "processed_units": self.processed_units,
            "total_units": self.total_units,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "deltas": dict(self.deltas),
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """Queue-backed view of a ProgressChannel."""

    def __init__(self, channel: "ProgressChannel"):
        self._channel = channel
        self._queue: "queue.Queue[SessionEvent]" = queue.Queue()

    def _put(self, event: SessionEvent) -> None:
        self._queue.put(event)

    @property
    def pending(self) -> int:
        """Approximate number of undelivered events."""
        return self._queue.qsize()

    def drain(self) -> list[SessionEvent]:
        """Return every pending event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def get(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        """Block up to timeout seconds for the next event."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __iter__(self) -> Iterator[SessionEvent]:
        return iter(self.drain())

    def close(self) -> None:
        self._channel.unsubscribe(self)


class ProgressChannel:
    """
    Fan-out channel for SessionEvents.

    Usage:
        channel = ProgressChannel()
        sub = channel.subscribe()
        channel.publish(event)
        for event in sub.drain():
            ...
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            subscribers = list(self._subscriptions)
        for subscription in subscribers:
            subscription._put(event)
