"""Observability data models shared by the collectors and the sampler.

Every collector produces one or more digest lines; the sampler assembles
them into a Digest in a fixed section order. Host capabilities that may be
missing on a platform are reported with the Unsupported variant instead of
raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ThreadState(Enum):
    """Closed set of lifecycle states used by the thread-state histogram."""

    NEW = "NEW"  # Created but never started
    RUNNABLE = "RUNNABLE"
    WAITING = "WAITING"  # Parked in a known blocking call
    TERMINATED = "TERMINATED"


@dataclass(frozen=True)
class Unsupported:
    """A host capability that is not exposed on this platform."""

    capability: str
    reason: str


@dataclass(frozen=True)
class CounterValue:
    """Absolute value of a monotonically growing host counter."""

    count: int
    time_ms: int


# Source name -> last observed absolute value
CounterSnapshot = dict[str, CounterValue]


@dataclass(frozen=True)
class CounterDelta:
    """Per-interval change of one counter source."""

    name: str
    collections: int
    time_ms: int
    reset: bool = False  # True when the host counter went backwards


@dataclass(frozen=True)
class HeapUsage:
    """Process memory figures, in bytes. max_bytes is None when unlimited."""

    used_bytes: int
    committed_bytes: int
    max_bytes: Optional[int]


@dataclass(frozen=True)
class OpenHandles:
    """Open file descriptor count against the process soft limit."""

    open: int
    limit: int


@dataclass(frozen=True)
class ConnectionClassSummary:
    """Unique subscribers and total connections for one connection class."""

    name: str  # e.g. "ajax" | "ws"
    unique_subscribers: int
    total_connections: int


@dataclass(frozen=True)
class SessionSummary:
    """Counts derived from one session/connection registry snapshot."""

    sessions: int
    participants: int
    observers: int
    update_flagged_sessions: int
    cached_users: int
    update_subscriptions: int
    update_uids: int
    average_subscription_minutes: int
    oldest_subscription_minutes: int
    connections: list[ConnectionClassSummary] = field(default_factory=list)


@dataclass
class DigestSection:
    """One named block of the digest (a collector's output)."""

    name: str
    lines: list[str]
    failed: bool = False


@dataclass
class Digest:
    """Assembled output of one tick."""

    tick: int
    timestamp: int  # UTC epoch when the tick started
    sections: list[DigestSection] = field(default_factory=list)

    def add(self, section: DigestSection) -> None:
        self.sections.append(section)

    def section(self, name: str) -> Optional[DigestSection]:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    @property
    def failed_sections(self) -> list[str]:
        return [s.name for s in self.sections if s.failed]

    def lines(self) -> list[str]:
        return [line for section in self.sections for line in section.lines]

    def render(self) -> str:
        """Render the digest as the multi-line text written to the log sink."""
        return "\n".join(self.lines())
