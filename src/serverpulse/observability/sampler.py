"""Background stats sampler for the game server.

Runs as an asyncio background task, waking every interval to collect all
sections of a Digest and emit it as one log event.

Design principles:
- Independent failure domain: a failing or slow probe only marks its own
  section; the loop always continues
- Non-blocking: probes run in worker threads under a per-probe timeout
- Read-only: no side effects on host state beyond fetch-and-clear of the delay log
- Single instance: start() is idempotent and stop() ends the loop cleanly
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from structlog.contextvars import bound_contextvars

from ..config.manager import ConfigManager, get_config_manager
from ..config.registry import get_config_key
from ..state import ServerStateSource
from .delays import format_delay_report
from .gc_tracker import GcTimer, GcTracker
from .models import Digest, DigestSection
from .probes import (
    HostRuntime,
    format_buffer_backlog,
    format_open_handles,
    format_system_line,
    format_thread_states,
    thread_state_histogram,
)
from .sessions import (
    active_card_frequencies,
    collect_session_summary,
    format_frequencies,
    format_pool_occupants,
    format_session_summary,
    recent_command_frequencies,
)

logger = structlog.get_logger(__name__)

# Section names, in digest order
SECTION_SESSIONS = "sessions"
SECTION_LATENCIES = "latencies"
SECTION_POOLS = "pool_occupants"
SECTION_GAME_ACTIVITY = "game_activity"
SECTION_THREADS = "thread_states"
SECTION_BUFFER = "outbound_buffer"
SECTION_GC = "gc"
SECTION_OPEN_HANDLES = "open_handles"
SECTION_SYSTEM = "system"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _emit_to_log(digest: Digest) -> None:
    logger.info(
        "stats_digest",
        tick=digest.tick,
        failed_sections=digest.failed_sections,
        digest=digest.render(),
    )


class StatsSampler:
    """Collect and emit a stats digest every ``interval_seconds``.

    Settings not passed explicitly come from the global ConfigManager when
    one is initialized, otherwise from the registry defaults. Dynamic updates
    to the ``sampler.*`` keys are applied while the sampler runs.
    """

    def __init__(
        self,
        source: ServerStateSource,
        runtime: Optional[HostRuntime] = None,
        interval_seconds: Optional[float] = None,
        probe_timeout_seconds: Optional[float] = None,
        include_game_activity: Optional[bool] = None,
        config: Optional[ConfigManager] = None,
        emit: Optional[Callable[[Digest], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        gc_tracker: Optional[GcTracker] = None,
    ):
        self.source = source
        self.runtime = runtime if runtime is not None else HostRuntime(gc_timer=GcTimer())
        self.config = config if config is not None else _global_config()
        self.gc_tracker = gc_tracker if gc_tracker is not None else GcTracker()

        self.interval_seconds = self._setting("sampler.interval_seconds", interval_seconds)
        self.probe_timeout_seconds = self._setting(
            "sampler.probe_timeout_seconds", probe_timeout_seconds
        )
        self.include_game_activity = self._setting(
            "sampler.include_game_activity", include_game_activity
        )
        self.recent_command_window_seconds = self._setting(
            "sampler.recent_command_window_seconds", None
        )
        self.top_frequencies = self._setting("sampler.top_frequencies", None)

        self._emit = emit or _emit_to_log
        self._clock = clock or _utcnow
        self._tick_count = 0
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    async def start(self) -> None:
        """Start the sampling loop in a background task (no-op if already running)."""
        if self.running:
            return
        self._running = True
        self._stop_event.clear()
        if self.runtime.gc_timer is not None:
            self.runtime.gc_timer.install()
        if self.config is not None:
            self.config.subscribe(self._on_config_updated)
        self._spawn_task()

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        self._stop_event.set()
        if self._restart_task:
            self._restart_task.cancel()
            self._restart_task = None
        if self._task:
            try:
                await self._task
            except Exception:  # noqa: BLE001
                # Crash is already logged by done callback; stop should still complete.
                pass
            self._task = None
        if self.runtime.gc_timer is not None:
            self.runtime.gc_timer.uninstall()
        if self.config is not None:
            self.config.unsubscribe(self._on_config_updated)

    def _spawn_task(self) -> None:
        self._task = asyncio.create_task(self.run(), name="stats-sampler")
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if not self._running:
            return
        if task.cancelled():
            logger.warning("stats_sampler_cancelled_unexpectedly")
        else:
            exc = task.exception()
            if exc is not None:
                logger.error("stats_sampler_crashed", error=str(exc))
            else:
                logger.warning("stats_sampler_exited_unexpectedly")

        if self._restart_task and not self._restart_task.done():
            return
        self._restart_task = asyncio.create_task(self._restart_after_delay())

    async def _restart_after_delay(self) -> None:
        await asyncio.sleep(self.interval_seconds)
        if self._running and (self._task is None or self._task.done()):
            self._spawn_task()
            logger.info("stats_sampler_restarted")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(
        self,
        interval_seconds: Optional[float] = None,
        max_ticks: Optional[int] = None,
    ) -> None:
        """Sleep, collect, emit; repeat until stopped or ``max_ticks`` reached.

        Args:
            interval_seconds: Overrides the configured interval when given.
            max_ticks: Stop after this many ticks (unbounded when None).
        """
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        logger.info("stats_sampler_started", interval_seconds=self.interval_seconds)

        ticks = 0
        while not self._stop_event.is_set():
            if await self._wait_for_stop(self.interval_seconds):
                break
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("stats_tick_failed", error=str(exc), exc_info=True)
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break

        logger.info("stats_sampler_stopped", ticks=ticks)

    async def _wait_for_stop(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when stop() was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def tick(self) -> Digest:
        """Run every collector once, emit the digest and return it."""
        self._tick_count += 1
        now = self._clock()
        digest = Digest(tick=self._tick_count, timestamp=int(now.timestamp()))
        start_ns = time.perf_counter_ns()

        with bound_contextvars(stats_tick=self._tick_count):
            for name, collect, finish in self._plan(now):
                digest.add(await self._section(name, collect, finish))

            duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
            logger.debug(
                "stats_tick_collected",
                duration_ms=round(duration_ms, 1),
                failed_sections=digest.failed_sections,
            )
            self._emit(digest)
        return digest

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _plan(self, now: datetime) -> list[tuple[str, Callable[[], Any], Optional[Callable[[Any], list[str]]]]]:
        source = self.source
        runtime = self.runtime
        plan: list[tuple[str, Callable[[], Any], Optional[Callable[[Any], list[str]]]]] = [
            (
                SECTION_SESSIONS,
                lambda: [format_session_summary(collect_session_summary(source, now))],
                None,
            ),
            (SECTION_LATENCIES, lambda: format_delay_report(source.fetch_and_clear_delay_log()), None),
            (SECTION_POOLS, lambda: [format_pool_occupants(source.pool_occupants())], None),
        ]
        if self.include_game_activity:
            plan.append((SECTION_GAME_ACTIVITY, lambda: self._game_activity_lines(now), None))
        plan.extend(
            [
                (
                    SECTION_THREADS,
                    lambda: [format_thread_states(thread_state_histogram(runtime.thread_states()))],
                    None,
                ),
                (SECTION_BUFFER, lambda: [format_buffer_backlog(*source.outbound_buffer_state())], None),
                # Snapshot is only updated once the reading has arrived
                (SECTION_GC, runtime.gc_counters, self.gc_tracker.observe),
                (SECTION_OPEN_HANDLES, lambda: [format_open_handles(runtime.open_handles())], None),
                (SECTION_SYSTEM, lambda: [format_system_line(runtime)], None),
            ]
        )
        return plan

    async def _section(
        self,
        name: str,
        collect: Callable[[], Any],
        finish: Optional[Callable[[Any], list[str]]] = None,
    ) -> DigestSection:
        """Run one probe in a worker thread; any failure becomes a marker line."""
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(collect), timeout=self.probe_timeout_seconds
            )
            lines = finish(result) if finish is not None else result
        except asyncio.TimeoutError:
            return self._failed(name, f"timed out after {self.probe_timeout_seconds}s")
        except Exception as exc:  # noqa: BLE001
            return self._failed(name, f"{type(exc).__name__}: {exc}")
        return DigestSection(name=name, lines=list(lines))

    def _failed(self, name: str, reason: str) -> DigestSection:
        logger.warning("probe_failed", probe=name, error=reason)
        return DigestSection(name=name, lines=[f"{name}: probe failed ({reason})"], failed=True)

    def _game_activity_lines(self, now: datetime) -> list[str]:
        sessions = list(self.source.session_registry_snapshot())
        window = timedelta(seconds=self.recent_command_window_seconds)
        return [
            format_frequencies("active cards", active_card_frequencies(sessions), self.top_frequencies),
            format_frequencies(
                "recent commands",
                recent_command_frequencies(sessions, now, window),
                self.top_frequencies,
            ),
        ]

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _setting(self, key: str, explicit: Any) -> Any:
        if explicit is not None:
            return explicit
        if self.config is not None:
            return self.config.get(key)
        return get_config_key(key).default

    def _on_config_updated(self, key: str, value: Any) -> None:
        attribute = _CONFIG_ATTRIBUTES.get(key)
        if attribute is None:
            return
        setattr(self, attribute, value)
        logger.info("stats_sampler_reconfigured", key=key, value=value)


_CONFIG_ATTRIBUTES = {
    "sampler.interval_seconds": "interval_seconds",
    "sampler.probe_timeout_seconds": "probe_timeout_seconds",
    "sampler.include_game_activity": "include_game_activity",
    "sampler.recent_command_window_seconds": "recent_command_window_seconds",
    "sampler.top_frequencies": "top_frequencies",
}


def _global_config() -> Optional[ConfigManager]:
    try:
        return get_config_manager()
    except RuntimeError:
        return None
