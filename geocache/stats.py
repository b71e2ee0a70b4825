"""
Cache Statistics.

Read-only aggregates over the entry store. Size and age are estimated from
a bounded sample so the call stays cheap on large caches.
"""

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from geocache.store import CacheEntry

RECENT_ENTRIES_LIMIT = 10


@dataclass
class CacheStatistics:
    """
    Snapshot of cache usage.

    Attributes:
        total_entries: Entries currently in the store
        total_regions: Cells currently in the region index
        approx_size_bytes: Estimated serialized size of all entries
        average_age_hours: Mean age of the sampled entries
        recent_entries: Most recently created sampled entries
        sample_size: Number of entries the estimates are based on
        hits: Successful lookups
        misses: Lookups that found nothing
        evictions: Entries evicted by capacity pressure
        expirations: Entries removed because they expired
        popular_regions: Names of the most popular regions
        operations: Per-operation counters
    """

    total_entries: int = 0
    total_regions: int = 0
    approx_size_bytes: int = 0
    average_age_hours: float = 0.0
    recent_entries: List[CacheEntry] = field(default_factory=list)
    sample_size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    popular_regions: List[str] = field(default_factory=list)
    operations: Dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_entries": self.total_entries,
            "total_regions": self.total_regions,
            "approx_size_bytes": self.approx_size_bytes,
            "average_age_hours": self.average_age_hours,
            "recent_entries": [e.entry_id for e in self.recent_entries],
            "sample_size": self.sample_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
            "popular_regions": list(self.popular_regions),
            "operations": dict(self.operations),
        }


class StatsRecorder:
    """Thread-safe hit/miss/eviction/expiration and operation counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._operations: Counter = Counter()

    def record_hit(self, count: int = 1) -> None:
        self._add("hits", count)

    def record_miss(self, count: int = 1) -> None:
        self._add("misses", count)

    def record_evictions(self, count: int) -> None:
        self._add("evictions", count)

    def record_expirations(self, count: int) -> None:
        self._add("expirations", count)

    def record_operation(self, operation: str, value: int = 1) -> None:
        with self._lock:
            self._operations[operation] += value

    def _add(self, name: str, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counters[name] += count

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def operations(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._operations)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._operations.clear()


def estimate_entry_size(entry: CacheEntry) -> int:
    """Approximate serialized size of an entry in bytes."""
    return len(json.dumps(entry.to_dict(), default=str).encode("utf-8"))


def summarize(
    sample: List[CacheEntry],
    total_entries: int,
    total_regions: int,
    now: datetime,
    recorder: StatsRecorder,
    popular_regions: List[str],
) -> CacheStatistics:
    """
    Build statistics from a bounded sample.

    Size is extrapolated from the sample mean to all entries; age is the
    sample mean.
    """
    counters = recorder.counters()
    stats = CacheStatistics(
        total_entries=total_entries,
        total_regions=total_regions,
        sample_size=len(sample),
        hits=counters.get("hits", 0),
        misses=counters.get("misses", 0),
        evictions=counters.get("evictions", 0),
        expirations=counters.get("expirations", 0),
        popular_regions=popular_regions,
        operations=recorder.operations(),
    )
    if not sample:
        return stats

    sampled_size = sum(estimate_entry_size(entry) for entry in sample)
    stats.approx_size_bytes = int(round(sampled_size / len(sample) * total_entries))
    stats.average_age_hours = sum(e.age_hours(now) for e in sample) / len(sample)
    stats.recent_entries = sorted(
        sample, key=lambda e: e.created_at, reverse=True
    )[:RECENT_ENTRIES_LIMIT]
    return stats
