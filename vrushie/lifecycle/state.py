"""Server lifecycle state: worker tracking and the one-shot shutdown latch."""

import logging
import socket
import threading
import time
from typing import Optional

from vrushie.domain.request_context import RequestLoggerAdapter

LIFECYCLE_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.lifecycle"), {})

TRIGGER_QUOTA = "quota_reached"
TRIGGER_MANUAL = "manual"


def _shutdown_socket(client_socket: socket.socket) -> None:
    try:
        client_socket.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class ServerLifecycle:
    """Tracks worker threads and coordinates the two-phase shutdown.

    Shutdown can be requested from the quota path and from a manual signal;
    :meth:`begin_draining` runs its effects only for the first caller.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._draining_event = threading.Event()
        self._latch = threading.Lock()
        self._trigger: Optional[str] = None
        self._workers: dict[threading.Thread, socket.socket] = {}
        self._idle: set[threading.Thread] = set()

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        return self._stop_event.is_set()

    def is_draining(self) -> bool:
        return self._draining_event.is_set()

    @property
    def trigger(self) -> Optional[str]:
        """What started the shutdown, or None while running."""
        return self._trigger

    def register_worker(self, thread: threading.Thread, client_socket: socket.socket) -> None:
        with self._lock:
            self._workers[thread] = client_socket

    def cleanup_worker(self, thread: threading.Thread) -> None:
        with self._lock:
            self._workers.pop(thread, None)
            self._idle.discard(thread)

    def has_worker(self, thread: threading.Thread) -> bool:
        with self._lock:
            return thread in self._workers

    def active_worker_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def mark_idle(self, thread: threading.Thread) -> bool:
        """Flag a worker as waiting for its next request.

        Returns False when the server is already draining, in which case the
        worker should close its connection instead of waiting.
        """
        with self._lock:
            if self._draining_event.is_set():
                return False
            self._idle.add(thread)
            return True

    def mark_busy(self, thread: threading.Thread) -> None:
        with self._lock:
            self._idle.discard(thread)

    def begin_draining(self, trigger: str = TRIGGER_MANUAL) -> bool:
        """Start graceful shutdown; True only for the call that started it."""
        if not self._latch.acquire(blocking=False):
            LIFECYCLE_LOGGER.debug(
                "Shutdown already in progress",
                extra={"event": "shutdown_duplicate", "trigger": trigger},
            )
            return False
        self._trigger = trigger
        self._draining_event.set()
        self._stop_event.set()
        LIFECYCLE_LOGGER.info(
            "Beginning graceful shutdown",
            extra={"event": "shutdown_started", "trigger": trigger},
        )
        self._close_idle_connections()
        return True

    def _close_idle_connections(self) -> None:
        with self._lock:
            idle_sockets = [self._workers[t] for t in self._idle if t in self._workers]
        for client_socket in idle_sockets:
            _shutdown_socket(client_socket)
        if idle_sockets:
            LIFECYCLE_LOGGER.info(
                "Closed idle connections",
                extra={"event": "idle_connections_closed", "count": len(idle_sockets)},
            )

    def terminate_connections(self) -> int:
        """Forcibly shut down every tracked client socket; returns how many."""
        with self._lock:
            sockets = list(self._workers.values())
        for client_socket in sockets:
            _shutdown_socket(client_socket)
        LIFECYCLE_LOGGER.warning(
            "Terminated remaining connections",
            extra={"event": "connections_terminated", "count": len(sockets)},
        )
        return len(sockets)

    def wait_for_workers(self, timeout: float) -> bool:
        """Wait for all worker threads to complete within the timeout."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                for worker in [w for w in self._workers if not w.is_alive()]:
                    self._workers.pop(worker, None)
                    self._idle.discard(worker)
                active_workers = list(self._workers)
            if not active_workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LIFECYCLE_LOGGER.warning(
                    "Shutdown timeout exceeded",
                    extra={
                        "event": "shutdown_timeout",
                        "remaining_workers": len(active_workers),
                    },
                )
                return False
            for worker in active_workers:
                worker.join(timeout=min(0.1, remaining))
                if time.monotonic() >= deadline:
                    break
