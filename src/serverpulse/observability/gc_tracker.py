"""Garbage-collector activity as per-interval deltas.

CPython exposes per-generation collection counts through gc.get_stats()
but no cumulative pause time, so GcTimer hooks gc.callbacks to accumulate
it while the sampler runs. GcTracker keeps the last absolute reading so
each digest reports what happened since the previous tick.
"""

from __future__ import annotations

import gc
import time
from collections.abc import Mapping
from typing import Optional

import structlog

from .models import CounterDelta, CounterSnapshot, CounterValue

logger = structlog.get_logger(__name__)

_ZERO = CounterValue(count=0, time_ms=0)


def generation_name(generation: int) -> str:
    return f"generation-{generation}"


def compute_deltas(
    previous: Mapping[str, CounterValue],
    current: Mapping[str, CounterValue],
) -> tuple[list[CounterDelta], CounterSnapshot]:
    """Compute per-source deltas between two counter snapshots.

    A source missing from ``previous`` is compared against zero, so the first
    tick reports lifetime totals. A counter that went backwards (host reset)
    is clamped to zero and flagged rather than reported as negative.

    Args:
        previous: Snapshot stored at the last tick.
        current: Absolute values read this tick.

    Returns:
        Tuple of (deltas in ``current`` order, snapshot to store). The new
        snapshot keeps previous values for sources not read this tick.
    """
    deltas: list[CounterDelta] = []
    for name, value in current.items():
        prev = previous.get(name, _ZERO)
        delta_count = value.count - prev.count
        delta_time = value.time_ms - prev.time_ms
        reset = delta_count < 0 or delta_time < 0
        deltas.append(
            CounterDelta(
                name=name,
                collections=max(0, delta_count),
                time_ms=max(0, delta_time),
                reset=reset,
            )
        )

    snapshot: CounterSnapshot = dict(previous)
    snapshot.update(current)
    return deltas, snapshot


def format_delta(delta: CounterDelta) -> str:
    line = f"GC '{delta.name}': Collections = {delta.collections}, Time (ms) = {delta.time_ms}"
    if delta.reset:
        line += " (counter reset)"
    return line


class GcTracker:
    """Holds the Counter Snapshot between ticks."""

    def __init__(self, snapshot: Optional[Mapping[str, CounterValue]] = None):
        self.snapshot: CounterSnapshot = dict(snapshot or {})

    def observe(self, current: Mapping[str, CounterValue]) -> list[str]:
        """Compute delta lines for ``current`` and store it for the next tick."""
        deltas, self.snapshot = compute_deltas(self.snapshot, current)
        for delta in deltas:
            if delta.reset:
                logger.warning("gc_counter_reset", source=delta.name)
        return [format_delta(d) for d in deltas]


class GcTimer:
    """Accumulates collection pause time per generation via gc.callbacks."""

    def __init__(self) -> None:
        self._started: dict[int, int] = {}
        self._elapsed_ns: dict[int, int] = {}
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        if self._installed:
            return
        gc.callbacks.append(self._callback)
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        try:
            gc.callbacks.remove(self._callback)
        except ValueError:
            pass
        self._installed = False

    def elapsed_ms(self, generation: int) -> int:
        return self._elapsed_ns.get(generation, 0) // 1_000_000

    def _callback(self, phase: str, info: dict) -> None:
        # Runs inside the collector: must not take locks
        generation = info.get("generation", 0)
        now = time.perf_counter_ns()
        if phase == "start":
            self._started[generation] = now
        elif phase == "stop":
            started = self._started.pop(generation, None)
            if started is not None:
                self._elapsed_ns[generation] = self._elapsed_ns.get(generation, 0) + now - started


def read_gc_counters(timer: Optional[GcTimer] = None) -> CounterSnapshot:
    """Read absolute collection counts (and pause time when timed) per generation."""
    counters: CounterSnapshot = {}
    for generation, stats in enumerate(gc.get_stats()):
        counters[generation_name(generation)] = CounterValue(
            count=int(stats.get("collections", 0)),
            time_ms=timer.elapsed_ms(generation) if timer is not None else 0,
        )
    return counters
