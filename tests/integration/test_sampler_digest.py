"""End-to-end digest tests: in-memory server state through the sampler."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from serverpulse.config.manager import reset_config
from serverpulse.observability.models import (
    CounterValue,
    Digest,
    HeapUsage,
    ThreadState,
    Unsupported,
)
from serverpulse.observability.probes import MB, HostRuntime
from serverpulse.observability.sampler import StatsSampler
from serverpulse.state import InMemoryServerState, SessionView

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FixedRuntime(HostRuntime):
    """Host figures for a platform without descriptor introspection."""

    def __init__(self):
        super().__init__(process=MagicMock())
        self.counters = {"generation-0": CounterValue(5, 12), "generation-2": CounterValue(1, 3)}

    def gc_counters(self):
        return dict(self.counters)

    def thread_states(self):
        return [ThreadState.RUNNABLE, ThreadState.WAITING, ThreadState.WAITING]

    def load_average(self):
        return 1.0

    def cpu_count(self):
        return 4

    def heap_usage(self):
        return HeapUsage(64 * MB, 128 * MB, None)

    def open_handles(self):
        return Unsupported("open_handles", "file descriptor count not exposed")


@pytest.fixture(autouse=True)
def no_global_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def server_state():
    state = InMemoryServerState(buffer_queued=3, buffer_capacity=1024)
    state.sessions = {
        "g1": SessionView("g1", started=True, participants=("a", "b"), observers=("c",),
                          subscription_update_flag=True),
    }
    state.connections = {"ajax": {"a": 1}, "ws": {"b": 2}}
    state.subscriptions = {"a": NOW - timedelta(minutes=10)}
    state.users = {"a", "b"}
    state.pools = [{"a"}, set()]
    for delay in (30, 10, 50, 20, 40):
        state.record_delay("join", delay)
    state.delay_log._samples["chat"] = []  # noqa: SLF001  category seen but empty
    return state


@pytest.mark.asyncio
async def test_full_digest_over_two_ticks(server_state):
    runtime = FixedRuntime()
    emitted: list[Digest] = []
    sampler = StatsSampler(
        server_state,
        runtime=runtime,
        emit=emitted.append,
        clock=lambda: NOW,
        interval_seconds=0,
    )

    await sampler.run(max_ticks=1)
    runtime.counters = {"generation-0": CounterValue(7, 20), "generation-2": CounterValue(1, 3)}
    server_state.buffer_queued = 900
    await sampler.run(max_ticks=1)

    first, second = emitted
    assert first.render().splitlines() == [
        "stats - sessions: 1 participants: 2 observers: 1 cached-users: 2"
        " update-subs: 1 update-flagged-sessions: 1 update-uids: 1"
        " average-sub-lifetime: 10m oldest-sub: 10m"
        " | connections - ajax { uid: 1 conn: 1 } ws { uid: 1 conn: 2 }",
        "join: Average: 30ms - Count: 5 - Percentiles (5/25/50/75/95): 10ms/20ms/30ms/40ms/50ms",
        "chat: no data",
        "pool occupants: [1, 0]",
        "thread states: NEW=0 RUNNABLE=1 WAITING=2 TERMINATED=0",
        "outbound-buffer: 3 / 1024",
        "GC 'generation-0': Collections = 5, Time (ms) = 12",
        "GC 'generation-2': Collections = 1, Time (ms) = 3",
        "Open file descriptors: unsupported on this platform (file descriptor count not exposed)",
        "System Load (average): 25% - heap: used=64MB committed=128MB max=unlimited",
    ]

    lines = second.lines()
    assert lines[1] == "latencies: none recorded"
    assert "outbound-buffer: 900 / 1024" in lines
    assert "GC 'generation-0': Collections = 2, Time (ms) = 8" in lines
    assert "GC 'generation-2': Collections = 0, Time (ms) = 0" in lines
    assert second.tick == 2


@pytest.mark.asyncio
async def test_digest_with_real_host_runtime(server_state):
    emitted: list[Digest] = []
    sampler = StatsSampler(server_state, emit=emitted.append, interval_seconds=0)

    await sampler.run(max_ticks=1)

    (digest,) = emitted
    assert digest.failed_sections == []
    lines = digest.lines()
    assert lines[0].startswith("stats - sessions: 1")
    assert any(line.startswith("thread states: NEW=") for line in lines)
    assert any(line.startswith("GC 'generation-0': Collections = ") for line in lines)
    assert any(line.startswith("Open file descriptors: ") for line in lines)
    assert lines[-1].startswith("System Load (average): ")
