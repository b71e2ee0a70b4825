"""
Entry Store for Location-Bound Cache Entries.

The entry store is the source of truth for entry metadata (timestamps,
access counts, popularity, expiry). The region index is a secondary index
derived from the same entries.

All reads hand out metadata copies so callers never share mutable records
with the store. Content payloads are opaque and passed by reference. Every
mutation happens under the store lock.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from itertools import islice
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from geocache.enrichment import Enrichment

logger = logging.getLogger(__name__)


@dataclass
class Location:
    """
    Point a cache entry is about.

    Attributes:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        accuracy: Horizontal accuracy in meters
    """

    latitude: float
    longitude: float
    accuracy: float = 10.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            accuracy=data.get("accuracy", 10.0),
        )


@dataclass
class CacheEntry:
    """
    One cached content item bound to a place.

    Attributes:
        entry_id: Deterministic id from quantized location and content id
        content_id: Id assigned by the content generator
        location: Point the content is about
        region_id: Grid cell assigned at insert time
        content: Opaque payload, never inspected
        created_at: Insert timestamp
        last_accessed_at: Last successful read
        expires_at: Time after which the entry is invisible
        access_count: Number of successful reads
        popularity_score: Ranking and eviction weight
        tags: Classification tags
        enrichment: Enrichment record the entry was scored from
    """

    entry_id: str
    content_id: str
    location: Location
    region_id: Tuple[int, int]
    content: Any
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    access_count: int = 0
    popularity_score: float = 1.0
    tags: Set[str] = field(default_factory=set)
    enrichment: Optional[Enrichment] = None

    def is_expired(self, now: datetime) -> bool:
        """Check if entry has expired at the given time."""
        return now > self.expires_at

    def age_hours(self, now: datetime) -> float:
        """Hours since the entry was created."""
        return (now - self.created_at).total_seconds() / 3600

    def copy(self) -> "CacheEntry":
        """
        Copy of the entry metadata.

        The content payload is opaque and shared by reference; only the
        bookkeeping fields are detached.
        """
        return replace(
            self,
            location=replace(self.location),
            tags=set(self.tags),
            enrichment=copy.deepcopy(self.enrichment),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entry_id": self.entry_id,
            "content_id": self.content_id,
            "location": self.location.to_dict(),
            "region_id": list(self.region_id),
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "access_count": self.access_count,
            "popularity_score": self.popularity_score,
            "tags": sorted(self.tags),
            "enrichment": self.enrichment.to_dict() if self.enrichment else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Create from dictionary."""
        return cls(
            entry_id=data["entry_id"],
            content_id=data["content_id"],
            location=Location.from_dict(data["location"]),
            region_id=tuple(data["region_id"]),
            content=data.get("content"),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed_at=datetime.fromisoformat(data["last_accessed_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            access_count=data.get("access_count", 0),
            popularity_score=data.get("popularity_score", 1.0),
            tags=set(data.get("tags", [])),
            enrichment=Enrichment.from_dict(data["enrichment"])
            if data.get("enrichment")
            else None,
        )


class EntryInfo(NamedTuple):
    """Bookkeeping fields of an entry."""

    region_id: Tuple[int, int]
    access_count: int
    created_at: datetime
    expires_at: datetime


def make_entry_id(latitude: float, longitude: float, content_id: str) -> str:
    """
    Deterministic entry id.

    Coordinates are quantized to 4 decimals (~11 m) so repeated generation
    for the same place and content collapses to one entry.
    """
    return f"{latitude:.4f}_{longitude:.4f}_{content_id}"


class EntryStore:
    """
    Thread-safe mapping from entry id to entry record.

    Iteration order is insertion order, which the statistics sampler uses
    to look at the most recently inserted entries.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def put(self, entry: CacheEntry) -> None:
        """Store (or replace) an entry record."""
        with self._lock:
            self._entries[entry.entry_id] = entry.copy()

    def get(self, entry_id: str) -> Optional[CacheEntry]:
        """
        Get a copy of an entry.

        Returns:
            CacheEntry copy, or None if unknown
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.copy() if entry is not None else None

    def peek(self, entry_id: str) -> Optional[EntryInfo]:
        """
        Get the bookkeeping fields of an entry without copying its content.

        Used on hot paths (eviction ordering, region lookup, sweeps).
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            return EntryInfo(
                entry.region_id, entry.access_count, entry.created_at, entry.expires_at
            )

    def delete(self, entry_id: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if the entry existed
        """
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def touch(
        self, entry_id: str, now: datetime, increment: float = 0.1
    ) -> Optional[CacheEntry]:
        """
        Record a successful read.

        Increments access_count, sets last_accessed_at and bumps popularity
        in one critical section, so concurrent touches never lose updates.

        Returns:
            Updated entry copy, or None if the entry is gone
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            entry.access_count += 1
            entry.last_accessed_at = max(now, entry.created_at)
            entry.popularity_score += increment
            return entry.copy()

    def update(self, entry_id: str, **changes: Any) -> Optional[CacheEntry]:
        """
        Apply field changes to an existing entry.

        Returns:
            Updated entry copy, or None if the entry is gone
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            updated = replace(entry, **changes).copy()
            self._entries[entry_id] = updated
            return updated.copy()

    @staticmethod
    def is_expired(entry: CacheEntry, now: datetime) -> bool:
        """Check if an entry has expired (now > expires_at)."""
        return entry.is_expired(now)

    def expired_ids(self, now: datetime) -> List[str]:
        """Ids of all entries expired at the given time."""
        with self._lock:
            return [
                entry_id
                for entry_id, entry in self._entries.items()
                if entry.is_expired(now)
            ]

    def sample(self, size: int) -> List[CacheEntry]:
        """Copies of up to `size` most recently inserted entries."""
        with self._lock:
            recent = list(islice(reversed(self._entries.values()), size))
            return [entry.copy() for entry in recent]

    def all_entries(self) -> List[CacheEntry]:
        """Copies of every entry."""
        with self._lock:
            return [entry.copy() for entry in self._entries.values()]

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> int:
        """
        Remove all entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug(f"Cleared {count} entries from store")
        return count
