"""Read interfaces into state owned by the host server.

The sampler never mutates host state. It reaches sessions, connections,
the delay log and the outbound buffer only through ServerStateSource.
InMemoryServerState is a ready-made implementation for servers that keep
this state in process, and is what the tests drive.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class CommandRecord:
    """One player command issued inside a session."""

    command: str
    timestamp: datetime


@dataclass(frozen=True)
class SessionView:
    """Point-in-time view of one game session (lobby)."""

    session_id: str
    started: bool
    participants: tuple[str, ...] = ()
    observers: tuple[str, ...] = ()
    subscription_update_flag: bool = False
    active_cards: tuple[str, ...] = ()
    command_log: tuple[CommandRecord, ...] = ()


@runtime_checkable
class ServerStateSource(Protocol):
    """Non-blocking accessors the sampler reads each tick."""

    def fetch_and_clear_delay_log(self) -> Mapping[str, Sequence[int]]:
        """Latencies (ms) per category since the last call; the log is emptied."""
        ...

    def session_registry_snapshot(self) -> Collection[SessionView]:
        ...

    def connection_registry_snapshot(self) -> Mapping[str, Collection[tuple[str, int]]]:
        """Connection class ("ajax", "ws") -> (uid, open connection count) pairs."""
        ...

    def outbound_buffer_state(self) -> tuple[int, int]:
        """(queued items, capacity) of the outbound broadcast buffer."""
        ...

    def update_subscriptions(self) -> Mapping[str, Optional[datetime]]:
        """uid -> when its lobby-update subscription started (None if inactive)."""
        ...

    def cached_user_count(self) -> int:
        ...

    def pool_occupants(self) -> Sequence[Collection[Any]]:
        """Occupants of each matchmaking pool."""
        ...


class DelayLog:
    """Thread-safe latency log with an atomic fetch-and-clear."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: dict[str, list[int]] = defaultdict(list)

    def record(self, category: str, delay_ms: int) -> None:
        if delay_ms < 0:
            return
        with self._lock:
            self._samples[category].append(int(delay_ms))

    def fetch_and_clear(self) -> dict[str, list[int]]:
        with self._lock:
            batch = dict(self._samples)
            self._samples = defaultdict(list)
        return batch


@dataclass
class InMemoryServerState:
    """In-process ServerStateSource backed by plain containers."""

    delay_log: DelayLog = field(default_factory=DelayLog)
    sessions: dict[str, SessionView] = field(default_factory=dict)
    connections: dict[str, dict[str, int]] = field(default_factory=dict)
    subscriptions: dict[str, Optional[datetime]] = field(default_factory=dict)
    users: set[str] = field(default_factory=set)
    pools: list[set[str]] = field(default_factory=list)
    buffer_queued: int = 0
    buffer_capacity: int = 0

    def record_delay(self, category: str, delay_ms: int) -> None:
        self.delay_log.record(category, delay_ms)

    def fetch_and_clear_delay_log(self) -> Mapping[str, Sequence[int]]:
        return self.delay_log.fetch_and_clear()

    def session_registry_snapshot(self) -> Collection[SessionView]:
        return tuple(self.sessions.values())

    def connection_registry_snapshot(self) -> Mapping[str, Collection[tuple[str, int]]]:
        return {
            conn_class: tuple(uids.items())
            for conn_class, uids in list(self.connections.items())
        }

    def outbound_buffer_state(self) -> tuple[int, int]:
        return self.buffer_queued, self.buffer_capacity

    def update_subscriptions(self) -> Mapping[str, Optional[datetime]]:
        return dict(self.subscriptions)

    def cached_user_count(self) -> int:
        return len(self.users)

    def pool_occupants(self) -> Sequence[Collection[Any]]:
        return [frozenset(pool) for pool in self.pools]
