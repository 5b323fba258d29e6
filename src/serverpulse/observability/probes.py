"""Host-runtime resource probes.

Each introspection call lives behind a HostRuntime method that returns
either a value or an Unsupported marker, so platform gaps show up as data
in the digest. The format_* helpers turn those values into digest lines.
"""

from __future__ import annotations

import math
import os
import sys
import threading
from collections import Counter
from collections.abc import Iterable, Mapping
from types import FrameType
from typing import Optional, Union

import psutil
import structlog

from .gc_tracker import GcTimer, read_gc_counters
from .models import CounterSnapshot, HeapUsage, OpenHandles, ThreadState, Unsupported

logger = structlog.get_logger(__name__)

# Process handle cached at module level (avoids repeated PID lookups)
_process: Optional[psutil.Process] = None

# (module, function) pairs at the top of the stack that mean the thread is parked
WAITING_FRAMES = frozenset(
    {
        ("threading", "wait"),
        ("threading", "wait_for"),
        ("threading", "_wait_for_tstate_lock"),
        ("threading", "join"),
        ("queue", "get"),
        ("queue", "put"),
        ("selectors", "select"),
        ("socket", "accept"),
        ("socket", "readinto"),
        ("ssl", "read"),
        ("subprocess", "wait"),
        ("subprocess", "_wait"),
        ("concurrent.futures.thread", "_worker"),
        ("concurrent.futures._base", "result"),
    }
)

MB = 1024 * 1024


def _get_process() -> psutil.Process:
    """Return a cached psutil.Process handle for this process."""
    global _process
    if _process is None:
        _process = psutil.Process(os.getpid())
    return _process


class HostRuntime:
    """Read-only view of the interpreter and OS figures used by the digest."""

    def __init__(
        self,
        process: Optional[psutil.Process] = None,
        gc_timer: Optional[GcTimer] = None,
    ):
        self._process = process
        self.gc_timer = gc_timer

    @property
    def process(self) -> psutil.Process:
        if self._process is None:
            self._process = _get_process()
        return self._process

    def gc_counters(self) -> CounterSnapshot:
        return read_gc_counters(self.gc_timer)

    def thread_states(self) -> list[ThreadState]:
        return snapshot_thread_states()

    def load_average(self) -> Union[float, Unsupported]:
        """1-minute system load average."""
        try:
            return float(psutil.getloadavg()[0])
        except (AttributeError, OSError) as exc:
            return Unsupported("load_average", str(exc) or type(exc).__name__)

    def cpu_count(self) -> Union[int, Unsupported]:
        count = psutil.cpu_count()
        if not count:
            return Unsupported("cpu_count", "processor count not reported")
        return count

    def heap_usage(self) -> Union[HeapUsage, Unsupported]:
        """Resident/virtual size plus the address-space limit where exposed."""
        try:
            mem = self.process.memory_info()
        except psutil.Error as exc:
            return Unsupported("heap_usage", str(exc))

        max_bytes: Optional[int] = None
        if hasattr(psutil, "RLIMIT_AS") and hasattr(self.process, "rlimit"):
            try:
                soft, _hard = self.process.rlimit(psutil.RLIMIT_AS)
            except psutil.Error as exc:
                # Limit unreadable: report the sizes without a ceiling
                logger.debug("heap_limit_unavailable", error=str(exc))
                soft = psutil.RLIM_INFINITY
            if soft != psutil.RLIM_INFINITY and soft > 0:
                max_bytes = soft

        return HeapUsage(used_bytes=mem.rss, committed_bytes=mem.vms, max_bytes=max_bytes)

    def open_handles(self) -> Union[OpenHandles, Unsupported]:
        """Open descriptor count against the soft RLIMIT_NOFILE."""
        if not hasattr(self.process, "num_fds"):
            return Unsupported("open_handles", "file descriptor count not exposed")
        if not (hasattr(psutil, "RLIMIT_NOFILE") and hasattr(self.process, "rlimit")):
            return Unsupported("open_handles", "file descriptor limit not exposed")

        try:
            open_fds = self.process.num_fds()
            soft, _hard = self.process.rlimit(psutil.RLIMIT_NOFILE)
        except (psutil.AccessDenied, psutil.NoSuchProcess) as exc:
            return Unsupported("open_handles", str(exc))

        if soft == psutil.RLIM_INFINITY or soft <= 0:
            return Unsupported("open_handles", "no finite descriptor limit")
        return OpenHandles(open=open_fds, limit=soft)


# ---------------------------------------------------------------------------
# Thread states
# ---------------------------------------------------------------------------


def classify_thread(thread: threading.Thread, frames: Mapping[int, FrameType]) -> ThreadState:
    """Map a thread to its lifecycle state.

    Args:
        thread: Thread to classify.
        frames: ``sys._current_frames()`` taken at the same instant.
    """
    if thread.ident is None:
        return ThreadState.NEW
    if not thread.is_alive():
        return ThreadState.TERMINATED
    frame = frames.get(thread.ident)
    if frame is not None and _frame_key(frame) in WAITING_FRAMES:
        return ThreadState.WAITING
    return ThreadState.RUNNABLE


def _frame_key(frame: FrameType) -> tuple[str, str]:
    return frame.f_globals.get("__name__", ""), frame.f_code.co_name


def snapshot_thread_states(threads: Optional[Iterable[threading.Thread]] = None) -> list[ThreadState]:
    """Classify every live thread (or the given ones) at one point in time."""
    if threads is None:
        threads = threading.enumerate()
    frames = sys._current_frames()
    return [classify_thread(t, frames) for t in threads]


def thread_state_histogram(states: Iterable[ThreadState]) -> dict[ThreadState, int]:
    """Count states; every ThreadState member is present, counts sum to len(states)."""
    counts = Counter(states)
    return {state: counts.get(state, 0) for state in ThreadState}


def format_thread_states(histogram: Mapping[ThreadState, int]) -> str:
    body = " ".join(f"{state.value}={histogram.get(state, 0)}" for state in ThreadState)
    return f"thread states: {body}"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def describe_unsupported(result: Unsupported) -> str:
    return f"unsupported on this platform ({result.reason})"


def load_ratio(load_average: float, processors: int) -> str:
    """Load average as a share of available processors: ``"25%"``.

    Halves round up, so 12.5% is reported as ``"13%"``.
    """
    return f"{math.floor(100 * load_average / processors + 0.5)}%"


def format_heap(heap: Union[HeapUsage, Unsupported]) -> str:
    if isinstance(heap, Unsupported):
        return describe_unsupported(heap)
    limit = "unlimited" if heap.max_bytes is None else f"{heap.max_bytes // MB}MB"
    return (
        f"used={heap.used_bytes // MB}MB "
        f"committed={heap.committed_bytes // MB}MB "
        f"max={limit}"
    )


def format_open_handles(result: Union[OpenHandles, Unsupported]) -> str:
    if isinstance(result, Unsupported):
        return f"Open file descriptors: {describe_unsupported(result)}"
    pct = 100.0 * result.open / result.limit
    return f"Open file descriptors: {result.open} / {result.limit} ({pct:.1f}%)"


def format_buffer_backlog(queued: int, capacity: int) -> str:
    return f"outbound-buffer: {queued} / {capacity}"


def format_system_line(runtime: HostRuntime) -> str:
    """Closing digest line: load ratio and heap figures."""
    load = runtime.load_average()
    processors = runtime.cpu_count()
    if isinstance(load, Unsupported):
        load_text = describe_unsupported(load)
    elif isinstance(processors, Unsupported):
        load_text = describe_unsupported(processors)
    else:
        load_text = load_ratio(load, processors)
    return f"System Load (average): {load_text} - heap: {format_heap(runtime.heap_usage())}"
