"""Nearest-rank percentiles over latency samples."""

from collections.abc import Iterable, Sequence
from typing import Union

NO_DATA = "no data"


def percentile(samples: Iterable[int], p: float) -> Union[int, float, str]:
    """Return the nearest-rank ``p``-th percentile of ``samples``.

    The index is ``floor(p / 100 * count)`` into the sorted samples, without
    interpolation, clamped to the last element so ``p = 100`` yields the max.

    Args:
        samples: Latency values in milliseconds (any order).
        p: Percentile in the range 0-100.

    Returns:
        The sample at the computed rank, or NO_DATA when there are no samples.
    """
    ordered = sorted(samples)
    if not ordered:
        return NO_DATA
    idx = int(p / 100 * len(ordered))
    idx = min(max(idx, 0), len(ordered) - 1)
    return ordered[idx]


def format_percentiles(samples: Iterable[int], percentiles: Sequence[float]) -> str:
    """Format several percentiles as ``10ms/20ms/30ms``.

    Returns NO_DATA for an empty sample set instead of a row of sentinels.
    """
    ordered = sorted(samples)
    if not ordered:
        return NO_DATA
    return "/".join(f"{percentile(ordered, p)}ms" for p in percentiles)
