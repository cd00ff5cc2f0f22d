"""Activity records and the one-way channel from workers to the observer."""

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from vrushie.domain.request_context import RequestLoggerAdapter

OBSERVER_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.observer"), {})

SERVER_CLIENT_ID = "Server"


class Outcome(str, Enum):
    ALLOWED = "allowed"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    SHUTDOWN = "shutdown"


_OUTCOME_LEVELS = {
    Outcome.ALLOWED: logging.INFO,
    Outcome.REJECTED: logging.WARNING,
    Outcome.COMPLETED: logging.INFO,
    Outcome.FAILED: logging.WARNING,
    Outcome.ERROR: logging.ERROR,
    Outcome.SHUTDOWN: logging.INFO,
}


@dataclass(frozen=True)
class ActivityRecord:
    """One entry of the activity history."""

    timestamp: datetime
    client_id: str
    outcome: Outcome
    message: str

    @classmethod
    def now(cls, client_id: str, outcome: Outcome, message: str) -> "ActivityRecord":
        return cls(datetime.now(), client_id, outcome, message)


class ActivityFeed:
    """Bounded producer/consumer channel whose producers never block.

    When the queue is full the oldest pending record is discarded to make room.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: "queue.Queue[ActivityRecord]" = queue.Queue(maxsize=max(1, maxsize))
        self._drop_lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def publish(self, record: ActivityRecord) -> bool:
        """Enqueue ``record``; returns False if something had to be dropped."""
        try:
            self._queue.put_nowait(record)
            return True
        except queue.Full:
            pass
        discarded = 0
        with self._drop_lock:
            try:
                self._queue.get_nowait()
                discarded += 1
            except queue.Empty:
                pass
            try:
                self._queue.put_nowait(record)
            except queue.Full:
                discarded += 1
            self._dropped += discarded
        if not discarded:
            return True
        OBSERVER_LOGGER.debug(
            "Activity channel full, dropped oldest record",
            extra={"event": "activity_dropped", "dropped": self._dropped},
        )
        return False

    def get(self, timeout: Optional[float] = None) -> Optional[ActivityRecord]:
        """Return the next record, or None if nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def empty(self) -> bool:
        return self._queue.empty()


Listener = Callable[[ActivityRecord], None]


class ActivityObserver:
    """Single consumer of an :class:`ActivityFeed`.

    Keeps the most recent records, logs each one, and forwards it to any
    registered listeners on the observer thread.
    """

    def __init__(self, feed: ActivityFeed, history_size: int = 10) -> None:
        self._feed = feed
        self._history: deque[ActivityRecord] = deque(maxlen=max(1, history_size))
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def history(self) -> tuple[ActivityRecord, ...]:
        """Recent records, oldest first."""
        with self._lock:
            return tuple(self._history)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="activity-observer", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Consume whatever is still queued, then stop the observer thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while True:
            record = self._feed.get(timeout=0.1)
            if record is None:
                if self._stop_event.is_set() and self._feed.empty():
                    return
                continue
            self.consume(record)

    def consume(self, record: ActivityRecord) -> None:
        """Apply one record to the history, the log and the listeners."""
        with self._lock:
            self._history.append(record)
            listeners = list(self._listeners)
        OBSERVER_LOGGER.log(
            _OUTCOME_LEVELS[record.outcome],
            record.message,
            extra={
                "event": f"activity_{record.outcome.value}",
                "client_id": record.client_id,
                "outcome": record.outcome.value,
            },
        )
        for listener in listeners:
            try:
                listener(record)
            except Exception:  # pylint: disable=broad-except
                OBSERVER_LOGGER.exception(
                    "Activity listener failed", extra={"event": "listener_error"}
                )
