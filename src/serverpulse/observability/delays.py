"""Per-category latency summaries for the digest."""

from collections.abc import Mapping, Sequence

from .percentiles import NO_DATA, format_percentiles

DELAY_PERCENTILES: tuple[int, ...] = (5, 25, 50, 75, 95)
EMPTY_LOG_LINE = "latencies: none recorded"


def summarize_delays(samples: Sequence[int]) -> str:
    """Summarize one category's samples.

    ``Average: 30ms - Count: 5 - Percentiles (5/25/50/75/95): 10ms/20ms/30ms/40ms/50ms``
    or NO_DATA when the category is empty. The average uses integer division.
    """
    values = list(samples)
    if not values:
        return NO_DATA
    average = sum(values) // len(values)
    labels = "/".join(str(p) for p in DELAY_PERCENTILES)
    return (
        f"Average: {average}ms - Count: {len(values)} - "
        f"Percentiles ({labels}): {format_percentiles(values, DELAY_PERCENTILES)}"
    )


def format_delay_report(delays: Mapping[str, Sequence[int]]) -> list[str]:
    """Build one ``<category>: <summary>`` line per category, in log order.

    Args:
        delays: A batch returned by the delay log's fetch-and-clear accessor.

    Returns:
        Digest lines; a single placeholder line when nothing was recorded.
    """
    if not delays:
        return [EMPTY_LOG_LINE]
    return [f"{category}: {summarize_delays(samples)}" for category, samples in delays.items()]
