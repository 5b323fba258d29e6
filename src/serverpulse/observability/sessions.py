"""Session, subscriber and connection metrics from the host registries."""

from __future__ import annotations

from collections import Counter
from collections.abc import Collection, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Optional

from ..state import ServerStateSource, SessionView
from .models import ConnectionClassSummary, SessionSummary


def subscriber_age_metrics(timestamps: Iterable[datetime], now: datetime) -> tuple[int, int]:
    """Average and oldest subscription age, in whole minutes.

    Args:
        timestamps: Subscription start times.
        now: Reference time (same timezone awareness as ``timestamps``).

    Returns:
        Tuple of (average, oldest). Average divides by max(1, count); oldest
        is 0 when there are no subscriptions.
    """
    ages = [int((now - ts).total_seconds()) // 60 for ts in timestamps]
    if not ages:
        return 0, 0
    return sum(ages) // max(1, len(ages)), max(ages)


def summarize_connections(
    registry: Mapping[str, Collection[tuple[str, int]]],
) -> list[ConnectionClassSummary]:
    """Unique uids and total open connections per connection class."""
    summaries = []
    for name, entries in registry.items():
        entries = list(entries)
        summaries.append(
            ConnectionClassSummary(
                name=name,
                unique_subscribers=len({uid for uid, _count in entries}),
                total_connections=sum(count for _uid, count in entries),
            )
        )
    return summaries


def collect_session_summary(source: ServerStateSource, now: datetime) -> SessionSummary:
    """Read each registry once and derive the summary counts."""
    sessions = list(source.session_registry_snapshot())
    subscriptions = dict(source.update_subscriptions())
    active = [ts for ts in subscriptions.values() if ts is not None]
    average_age, oldest_age = subscriber_age_metrics(active, now)

    return SessionSummary(
        sessions=len(sessions),
        participants=sum(len(s.participants) for s in sessions),
        observers=sum(len(s.observers) for s in sessions),
        update_flagged_sessions=sum(1 for s in sessions if s.subscription_update_flag),
        cached_users=source.cached_user_count(),
        update_subscriptions=len(active),
        update_uids=len(subscriptions),
        average_subscription_minutes=average_age,
        oldest_subscription_minutes=oldest_age,
        connections=summarize_connections(source.connection_registry_snapshot()),
    )


def format_session_summary(summary: SessionSummary) -> str:
    stats = (
        "stats -"
        f" sessions: {summary.sessions}"
        f" participants: {summary.participants}"
        f" observers: {summary.observers}"
        f" cached-users: {summary.cached_users}"
        f" update-subs: {summary.update_subscriptions}"
        f" update-flagged-sessions: {summary.update_flagged_sessions}"
        f" update-uids: {summary.update_uids}"
        f" average-sub-lifetime: {summary.average_subscription_minutes}m"
        f" oldest-sub: {summary.oldest_subscription_minutes}m"
    )
    connections = " ".join(
        f"{c.name} {{ uid: {c.unique_subscribers} conn: {c.total_connections} }}"
        for c in summary.connections
    )
    return f"{stats} | connections - {connections}" if connections else f"{stats} | connections - none"


def format_pool_occupants(pools: Sequence[Collection[Any]]) -> str:
    return f"pool occupants: {[len(pool) for pool in pools]}"


# ---------------------------------------------------------------------------
# Game activity (off by default; useful when diagnosing lock contention)
# ---------------------------------------------------------------------------


def active_card_frequencies(sessions: Iterable[SessionView]) -> Counter:
    """Card titles in play across all started sessions."""
    counts: Counter = Counter()
    for session in sessions:
        if session.started:
            counts.update(session.active_cards)
    return counts


def recent_command_frequencies(
    sessions: Iterable[SessionView],
    now: datetime,
    window: timedelta,
) -> Counter:
    """Commands issued in started sessions within ``window`` before ``now``."""
    counts: Counter = Counter()
    cutoff = now - window
    for session in sessions:
        if not session.started:
            continue
        counts.update(record.command for record in session.command_log if record.timestamp > cutoff)
    return counts


def format_frequencies(label: str, counts: Counter, top: Optional[int] = None) -> str:
    return f"{label}: {dict(counts.most_common(top))}"
