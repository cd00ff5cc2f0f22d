"""Point-in-time status snapshot consumed by presentation layers."""

import threading
from dataclasses import dataclass
from typing import Optional

from vrushie.lifecycle.state import ServerLifecycle
from vrushie.observer.activity import ActivityObserver, ActivityRecord
from vrushie.session.state import SessionState


def format_bytes(size: int) -> str:
    """Render a byte count in IEC units, e.g. ``1.5 KiB``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}iB"


@dataclass(frozen=True)
class StatusSnapshot:
    server_ready: bool
    listening_urls: tuple[str, ...]
    access_mode: str
    file_name: str
    file_size: str
    admitted: tuple[str, ...]
    admitted_count: int
    limit: Optional[int]
    completed: int
    in_flight: int
    quitting: bool
    last_error: Optional[str]
    recent: tuple[ActivityRecord, ...]


class ServiceStatus:
    """Combines session counters, lifecycle and activity history for display."""

    def __init__(
        self,
        session: SessionState,
        lifecycle: ServerLifecycle,
        observer: ActivityObserver,
        file_name: str,
        file_size: int,
    ) -> None:
        self._session = session
        self._lifecycle = lifecycle
        self._observer = observer
        self._file_name = file_name
        self._file_size = file_size
        self._lock = threading.Lock()
        self._server_ready = False
        self._listening_urls: tuple[str, ...] = ()
        self._last_error: Optional[str] = None

    def mark_ready(self, urls: list[str]) -> None:
        with self._lock:
            self._server_ready = True
            self._listening_urls = tuple(urls)

    def record_fatal(self, error: BaseException) -> None:
        with self._lock:
            self._last_error = str(error)

    def snapshot(self) -> StatusSnapshot:
        counts = self._session.current_counts()
        with self._lock:
            ready = self._server_ready
            urls = self._listening_urls
            last_error = self._last_error
        return StatusSnapshot(
            server_ready=ready,
            listening_urls=urls,
            access_mode=self._session.policy.describe(),
            file_name=self._file_name,
            file_size=format_bytes(self._file_size),
            admitted=counts.admitted,
            admitted_count=counts.admitted_count,
            limit=counts.limit,
            completed=counts.completed,
            in_flight=counts.in_flight,
            quitting=self._lifecycle.is_draining(),
            last_error=last_error,
            recent=self._observer.history(),
        )
