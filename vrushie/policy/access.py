"""Access policy: decides whether a client may receive the file right now.

The functions here are pure. They read a :class:`SessionView` and return a
:class:`Decision`; applying an admission or reserving a transfer slot is the
session state's job, done under its lock in the same critical section as the
evaluation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Protocol

from vrushie.domain.errors import ConfigError


class AccessMode(str, Enum):
    """Mutually exclusive access modes."""

    WHITELIST = "whitelist"
    FIRST_N_UNIQUE = "first_n_unique"
    SERVE_ONCE = "serve_once"


class DenyCode(str, Enum):
    """Machine-readable denial causes."""

    NOT_ALLOWED = "not_allowed"
    UNIQUE_LIMIT = "unique_limit"
    LIMIT_REACHED = "limit_reached"
    ALREADY_DOWNLOADED = "already_downloaded"
    SLOTS_BUSY = "slots_busy"


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable access policy chosen at startup."""

    mode: AccessMode
    limit: Optional[int] = None
    allowed: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.mode is AccessMode.WHITELIST:
            if not self.allowed:
                raise ConfigError("Whitelist mode requires at least one identifier")
            if self.limit is not None and self.limit < 1:
                raise ConfigError("Whitelist download limit must be 1 or greater")
        elif self.mode is AccessMode.FIRST_N_UNIQUE:
            if self.limit is None or self.limit < 1:
                raise ConfigError("First-N-unique mode requires a limit of 1 or more")
        elif self.limit not in (None, 1):
            raise ConfigError("Serve-once mode has a fixed limit of 1")

    @classmethod
    def whitelist(
        cls, identifiers: Iterable[str], limit: Optional[int] = None
    ) -> "PolicyConfig":
        cleaned = frozenset(i.strip() for i in identifiers if i and i.strip())
        return cls(AccessMode.WHITELIST, limit, cleaned)

    @classmethod
    def first_n_unique(cls, limit: int) -> "PolicyConfig":
        return cls(AccessMode.FIRST_N_UNIQUE, limit)

    @classmethod
    def serve_once(cls) -> "PolicyConfig":
        return cls(AccessMode.SERVE_ONCE, 1)

    @property
    def effective_limit(self) -> Optional[int]:
        """Maximum number of completed transfers, or None when unbounded."""
        if self.mode is AccessMode.SERVE_ONCE:
            return 1
        return self.limit

    def describe(self) -> str:
        """Human-readable access mode for the status display."""
        if self.mode is AccessMode.WHITELIST:
            text = f"Locked to {len(self.allowed)} specific IP(s)"
            if self.limit is not None:
                text += f", up to {self.limit} download(s)"
            return text
        if self.mode is AccessMode.FIRST_N_UNIQUE:
            return f"Serve to first {self.limit} unique IPs"
        return "Serve once to first successful download"


class SessionView(Protocol):
    """Read-only counters the policy consults."""

    def is_admitted(self, client_id: str) -> bool: ...

    @property
    def admitted_count(self) -> int: ...

    @property
    def completed(self) -> int: ...

    @property
    def in_flight(self) -> int: ...


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy evaluation.

    ``admit`` is set when an Allow claims a fresh first-N slot for the client.
    """

    allowed: bool
    reason: str = ""
    code: Optional[DenyCode] = None
    admit: bool = False

    @classmethod
    def allow(cls, admit: bool = False) -> "Decision":
        return cls(True, admit=admit)

    @classmethod
    def deny(cls, code: DenyCode, reason: str) -> "Decision":
        return cls(False, reason, code)


def check_identity(policy: PolicyConfig, client_id: str, view: SessionView) -> Decision:
    """First phase: is this identifier eligible under the configured mode?"""
    if policy.mode is AccessMode.WHITELIST:
        if client_id in policy.allowed:
            return Decision.allow()
        return Decision.deny(DenyCode.NOT_ALLOWED, "IP not in allowed list")

    if policy.mode is AccessMode.FIRST_N_UNIQUE:
        if view.is_admitted(client_id):
            return Decision.allow()
        if view.admitted_count < policy.limit:
            return Decision.allow(admit=True)
        return Decision.deny(
            DenyCode.UNIQUE_LIMIT, f"Limit of {policy.limit} unique clients reached"
        )

    return Decision.allow()


def check_exhaustion(policy: PolicyConfig, view: SessionView) -> Optional[Decision]:
    """Second phase: deny when the global transfer quota is used up or busy.

    Returns None when a transfer slot is available. Admitted identifiers are
    denied here too once other clients have used up the quota. First-N mode
    skips the in-flight check: its admission set already bounds the clients,
    and an admitted identifier may retry while other transfers are running.
    """
    limit = policy.effective_limit
    if limit is None:
        return None
    if view.completed >= limit:
        if policy.mode is AccessMode.SERVE_ONCE:
            return Decision.deny(DenyCode.ALREADY_DOWNLOADED, "File already downloaded")
        return Decision.deny(
            DenyCode.LIMIT_REACHED, f"Download limit of {limit} already reached"
        )
    if policy.mode is AccessMode.FIRST_N_UNIQUE:
        return None
    if view.completed + view.in_flight >= limit:
        if policy.mode is AccessMode.SERVE_ONCE:
            return Decision.deny(
                DenyCode.SLOTS_BUSY, "Another download is already in progress"
            )
        return Decision.deny(
            DenyCode.SLOTS_BUSY, f"All {limit} download slots are in use"
        )
    return None


def evaluate(policy: PolicyConfig, client_id: str, view: SessionView) -> Decision:
    """Decide Allow or Deny for ``client_id`` against the current counters."""
    decision = check_identity(policy, client_id, view)
    if not decision.allowed:
        return decision
    exhausted = check_exhaustion(policy, view)
    if exhausted is not None:
        return exhausted
    return decision
