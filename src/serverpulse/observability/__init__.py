"""Observability subsystem for serverpulse.

Provides the background stats sampler and the collectors it drives:
percentiles, latency summaries, GC deltas, host resource probes and
session/connection metrics.
"""

from .models import Digest, DigestSection, ThreadState, Unsupported
from .sampler import StatsSampler

__all__ = ["Digest", "DigestSection", "StatsSampler", "ThreadState", "Unsupported"]
