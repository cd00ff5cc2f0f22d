"""Shared session state guarded by a single lock."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.policy.access import AccessMode, Decision, PolicyConfig, evaluate

SESSION_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.session"), {})


@dataclass(frozen=True)
class SessionCounts:
    """Point-in-time copy of the session counters for display."""

    admitted: tuple[str, ...]
    completed: int
    in_flight: int
    limit: Optional[int]

    @property
    def admitted_count(self) -> int:
        return len(self.admitted)


class SessionState:
    """Admission set and transfer counters shared by all workers.

    Every mutation happens under ``self._lock`` and never spans file I/O. An
    Allow from :meth:`authorize` reserves one transfer slot; the caller must
    settle it with exactly one of :meth:`record_completion` or :meth:`release`.
    """

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy
        self._lock = threading.Lock()
        self._admitted: set[str] = set()
        self._completed = 0
        self._in_flight = 0

    @property
    def policy(self) -> PolicyConfig:
        return self._policy

    # SessionView, only valid while the lock is held

    def is_admitted(self, client_id: str) -> bool:
        return client_id in self._admitted

    @property
    def admitted_count(self) -> int:
        return len(self._admitted)

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _try_admit_locked(self, client_id: str) -> bool:
        if client_id in self._admitted:
            return True
        if self._policy.mode is not AccessMode.FIRST_N_UNIQUE:
            return False
        if len(self._admitted) >= self._policy.limit:
            return False
        self._admitted.add(client_id)
        return True

    def try_admit(self, client_id: str) -> bool:
        """Reserve a first-N slot for ``client_id``; True if it holds one.

        Standalone entry point for callers outside the request path. Requests
        go through :meth:`authorize`, which applies the same admission step in
        the critical section that evaluates the policy.
        """
        with self._lock:
            return self._try_admit_locked(client_id)

    def authorize(self, client_id: str) -> Decision:
        """Evaluate the policy and, on Allow, admit and reserve atomically."""
        with self._lock:
            decision = evaluate(self._policy, client_id, self)
            if decision.allowed:
                if decision.admit and not self._try_admit_locked(client_id):
                    raise RuntimeError("Admission refused after an Allow decision")
                self._in_flight += 1
        if SESSION_LOGGER.logger.isEnabledFor(logging.DEBUG):
            SESSION_LOGGER.debug(
                "Access evaluated",
                extra={
                    "event": "access_evaluated",
                    "allowed": decision.allowed,
                    "admitted_now": decision.admit,
                },
            )
        return decision

    def peek(self, client_id: str) -> Decision:
        """Evaluate the policy without admitting or reserving anything."""
        with self._lock:
            return evaluate(self._policy, client_id, self)

    def record_completion(self) -> tuple[int, bool]:
        """Account one fully delivered transfer.

        Returns the new completed count and whether this call is the one that
        reached the effective limit. The count never passes the limit: a
        repeat visit that finishes after the quota was met is not accounted.
        """
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1
            limit = self._policy.effective_limit
            if limit is not None and self._completed >= limit:
                return self._completed, False
            self._completed += 1
            reached = limit is not None and self._completed == limit
            return self._completed, reached

    def release(self) -> None:
        """Give back a reserved transfer slot after a failed transfer.

        A first-N admission stays with its identifier.
        """
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1

    def current_counts(self) -> SessionCounts:
        with self._lock:
            return SessionCounts(
                admitted=tuple(sorted(self._admitted)),
                completed=self._completed,
                in_flight=self._in_flight,
                limit=self._policy.effective_limit,
            )
