"""Unit tests for host resource probes."""

import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from serverpulse.observability.models import HeapUsage, OpenHandles, ThreadState, Unsupported
from serverpulse.observability.probes import (
    MB,
    HostRuntime,
    classify_thread,
    format_buffer_backlog,
    format_heap,
    format_open_handles,
    format_system_line,
    format_thread_states,
    load_ratio,
    snapshot_thread_states,
    thread_state_histogram,
)

needs_nofile = pytest.mark.skipif(
    not hasattr(psutil, "RLIMIT_NOFILE"), reason="psutil exposes no RLIMIT_NOFILE here"
)
needs_address_space = pytest.mark.skipif(
    not hasattr(psutil, "RLIMIT_AS"), reason="psutil exposes no RLIMIT_AS here"
)


def _frame(module: str, name: str):
    return SimpleNamespace(f_globals={"__name__": module}, f_code=SimpleNamespace(co_name=name))


# ---------------------------------------------------------------------------
# Thread states
# ---------------------------------------------------------------------------


def test_unstarted_thread_is_new():
    thread = threading.Thread(target=lambda: None)
    assert classify_thread(thread, {}) == ThreadState.NEW


def test_finished_thread_is_terminated():
    thread = threading.Thread(target=lambda: None)
    thread.start()
    thread.join()
    assert classify_thread(thread, {}) == ThreadState.TERMINATED


def test_current_thread_is_runnable():
    current = threading.current_thread()
    assert classify_thread(current, sys._current_frames()) == ThreadState.RUNNABLE


def test_thread_parked_in_wait_is_waiting():
    release = threading.Event()
    thread = threading.Thread(target=release.wait)
    thread.start()
    try:
        frames = {thread.ident: _frame("threading", "wait")}
        assert classify_thread(thread, frames) == ThreadState.WAITING
    finally:
        release.set()
        thread.join()


def test_user_function_named_like_blocking_call_is_runnable():
    release = threading.Event()
    thread = threading.Thread(target=release.wait)
    thread.start()
    try:
        frames = {thread.ident: _frame("game.cache", "get")}
        assert classify_thread(thread, frames) == ThreadState.RUNNABLE
    finally:
        release.set()
        thread.join()


def test_idle_executor_worker_is_waiting():
    release = threading.Event()
    thread = threading.Thread(target=release.wait)
    thread.start()
    try:
        frames = {thread.ident: _frame("concurrent.futures.thread", "_worker")}
        assert classify_thread(thread, frames) == ThreadState.WAITING
    finally:
        release.set()
        thread.join()


def test_alive_thread_without_frame_is_runnable():
    release = threading.Event()
    thread = threading.Thread(target=release.wait)
    thread.start()
    try:
        assert classify_thread(thread, {}) == ThreadState.RUNNABLE
    finally:
        release.set()
        thread.join()


def test_histogram_has_every_state_and_sums_to_snapshot_size():
    states = [ThreadState.RUNNABLE, ThreadState.WAITING, ThreadState.WAITING, ThreadState.NEW]
    histogram = thread_state_histogram(states)
    assert set(histogram) == set(ThreadState)
    assert sum(histogram.values()) == len(states)
    assert histogram[ThreadState.WAITING] == 2
    assert histogram[ThreadState.TERMINATED] == 0


def test_histogram_of_empty_snapshot_is_all_zero():
    assert thread_state_histogram([]) == {state: 0 for state in ThreadState}


def test_snapshot_covers_given_threads():
    unstarted = threading.Thread(target=lambda: None)
    threads = [threading.current_thread(), unstarted]
    states = snapshot_thread_states(threads)
    assert states == [ThreadState.RUNNABLE, ThreadState.NEW]
    assert sum(thread_state_histogram(states).values()) == len(threads)


def test_snapshot_of_live_process_counts_main_thread():
    states = snapshot_thread_states()
    assert len(states) >= 1
    assert all(isinstance(state, ThreadState) for state in states)


def test_format_thread_states_lists_states_in_enum_order():
    histogram = thread_state_histogram([ThreadState.RUNNABLE, ThreadState.WAITING])
    assert format_thread_states(histogram) == "thread states: NEW=0 RUNNABLE=1 WAITING=1 TERMINATED=0"


# ---------------------------------------------------------------------------
# Open handles
# ---------------------------------------------------------------------------


def test_open_handles_unsupported_without_fd_count():
    process = MagicMock(spec=["memory_info"])
    result = HostRuntime(process=process).open_handles()
    assert isinstance(result, Unsupported)
    assert format_open_handles(result).startswith(
        "Open file descriptors: unsupported on this platform ("
    )


@needs_nofile
def test_open_handles_ratio():
    process = MagicMock()
    process.num_fds.return_value = 12
    process.rlimit.return_value = (1024, 4096)
    result = HostRuntime(process=process).open_handles()
    assert result == OpenHandles(open=12, limit=1024)
    assert format_open_handles(result) == "Open file descriptors: 12 / 1024 (1.2%)"


@needs_nofile
def test_open_handles_unlimited_is_unsupported():
    process = MagicMock()
    process.num_fds.return_value = 12
    process.rlimit.return_value = (psutil.RLIM_INFINITY, psutil.RLIM_INFINITY)
    result = HostRuntime(process=process).open_handles()
    assert isinstance(result, Unsupported)
    assert "no finite descriptor limit" in result.reason


@needs_nofile
def test_open_handles_access_denied_is_unsupported():
    process = MagicMock()
    process.num_fds.side_effect = psutil.AccessDenied()
    assert isinstance(HostRuntime(process=process).open_handles(), Unsupported)


def test_open_handles_never_raises_on_this_host():
    result = HostRuntime().open_handles()
    assert isinstance(result, (OpenHandles, Unsupported))


# ---------------------------------------------------------------------------
# Load, heap, buffer
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "load, cpus, expected",
    [
        (2.0, 8, "25%"),
        (1.0, 3, "33%"),
        (0.0, 4, "0%"),
        (6.0, 4, "150%"),
        (0.5, 4, "13%"),
        (1.0, 8, "13%"),
        (0.25, 8, "3%"),
    ],
)
def test_load_ratio(load, cpus, expected):
    assert load_ratio(load, cpus) == expected


def test_load_average_unsupported_when_host_raises():
    with patch("serverpulse.observability.probes.psutil.getloadavg", side_effect=OSError("nope")):
        result = HostRuntime().load_average()
    assert result == Unsupported("load_average", "nope")


def test_cpu_count_unsupported_when_unknown():
    with patch("serverpulse.observability.probes.psutil.cpu_count", return_value=None):
        assert isinstance(HostRuntime().cpu_count(), Unsupported)


def test_heap_usage_without_address_space_limit():
    process = MagicMock(spec=["memory_info"])
    process.memory_info.return_value = SimpleNamespace(rss=100 * MB, vms=300 * MB)
    heap = HostRuntime(process=process).heap_usage()
    assert heap == HeapUsage(used_bytes=100 * MB, committed_bytes=300 * MB, max_bytes=None)


def test_heap_usage_reports_process_errors_as_unsupported():
    process = MagicMock(spec=["memory_info"])
    process.memory_info.side_effect = psutil.NoSuchProcess(pid=1)
    assert isinstance(HostRuntime(process=process).heap_usage(), Unsupported)


@needs_address_space
def test_heap_usage_keeps_sizes_when_limit_unreadable():
    process = MagicMock()
    process.memory_info.return_value = SimpleNamespace(rss=100 * MB, vms=300 * MB)
    process.rlimit.side_effect = psutil.AccessDenied()
    heap = HostRuntime(process=process).heap_usage()
    assert heap == HeapUsage(used_bytes=100 * MB, committed_bytes=300 * MB, max_bytes=None)


@needs_address_space
def test_system_line_survives_unreadable_heap_limit():
    process = MagicMock()
    process.memory_info.return_value = SimpleNamespace(rss=100 * MB, vms=300 * MB)
    process.rlimit.side_effect = psutil.NoSuchProcess(pid=1)
    runtime = HostRuntime(process=process)
    with patch("serverpulse.observability.probes.psutil.getloadavg", return_value=(2.0, 1.0, 1.0)), \
            patch("serverpulse.observability.probes.psutil.cpu_count", return_value=4):
        line = format_system_line(runtime)
    assert line == "System Load (average): 50% - heap: used=100MB committed=300MB max=unlimited"


def test_format_heap():
    assert format_heap(HeapUsage(100 * MB, 200 * MB, 1024 * MB)) == "used=100MB committed=200MB max=1024MB"
    assert format_heap(HeapUsage(1 * MB, 2 * MB, None)) == "used=1MB committed=2MB max=unlimited"


def test_format_buffer_backlog():
    assert format_buffer_backlog(3, 1024) == "outbound-buffer: 3 / 1024"


def test_system_line():
    runtime = MagicMock(spec=HostRuntime)
    runtime.load_average.return_value = 2.0
    runtime.cpu_count.return_value = 4
    runtime.heap_usage.return_value = HeapUsage(100 * MB, 200 * MB, None)
    assert format_system_line(runtime) == (
        "System Load (average): 50% - heap: used=100MB committed=200MB max=unlimited"
    )


def test_system_line_with_unsupported_load():
    runtime = MagicMock(spec=HostRuntime)
    runtime.load_average.return_value = Unsupported("load_average", "not exposed")
    runtime.cpu_count.return_value = 4
    runtime.heap_usage.return_value = HeapUsage(1 * MB, 1 * MB, None)
    assert format_system_line(runtime).startswith(
        "System Load (average): unsupported on this platform (not exposed) - heap:"
    )


def test_host_runtime_smoke():
    runtime = HostRuntime()
    assert isinstance(runtime.heap_usage(), (HeapUsage, Unsupported))
    assert format_system_line(runtime).startswith("System Load (average): ")
    assert runtime.gc_counters()
