"""
Region Index for Proximity Lookups.

Partitions the world into fixed-size grid cells. Each cell keeps an
ordered, bounded list of the ids of the entries located in it, so a
proximity search only visits the cells around the query point.

The index does not lock; the cache manager serializes structural changes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from geocache.exceptions import CapacityConflict
from geocache.geometry import RegionId, cell_bounds, cell_center, region_name
from geocache.store import CacheEntry, EntryStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Region:
    """
    A grid cell used as an index bucket.

    Attributes:
        region_id: (i, j) cell indices
        capacity: Maximum number of entry ids
        entry_ids: Ids of entries in the cell, in insertion order
        popularity_score: Rolling aggregate used to pick regions to pre-warm
        created_at: When the cell was first used
        last_updated: Last structural or popularity change
    """

    region_id: RegionId
    capacity: int
    entry_ids: List[str] = field(default_factory=list)
    popularity_score: float = 0.0
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def name(self) -> str:
        return region_name(self.region_id)

    @property
    def is_full(self) -> bool:
        return len(self.entry_ids) >= self.capacity

    def append(self, entry_id: str) -> None:
        """
        Append an id to the cell.

        Raises:
            CapacityConflict: If the cell is already at capacity
        """
        if self.is_full:
            raise CapacityConflict(self.name, self.capacity)
        self.entry_ids.append(entry_id)

    def discard(self, entry_id: str) -> bool:
        try:
            self.entry_ids.remove(entry_id)
        except ValueError:
            return False
        return True

    def to_dict(self, cell_size_deg: Optional[float] = None) -> Dict[str, Any]:
        """Convert to dictionary, with bounds/center when the cell size is known."""
        data = {
            "id": self.name,
            "entry_count": len(self.entry_ids),
            "popularity_score": self.popularity_score,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
        if cell_size_deg is not None:
            south, west, north, east = cell_bounds(self.region_id, cell_size_deg)
            lat, lon = cell_center(self.region_id, cell_size_deg)
            data["bounds"] = {"south": south, "west": west, "north": north, "east": east}
            data["center"] = {"latitude": lat, "longitude": lon}
        return data


class RegionIndex:
    """
    Cell -> entry-id index with per-cell capacity.

    Overflowing a cell evicts its least valuable entries, ordered by
    (access_count ascending, created_at ascending), before the new id is
    appended. Evicted entries are deleted from the entry store as well.
    """

    def __init__(
        self,
        store: EntryStore,
        max_entries_per_region: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize region index.

        Args:
            store: Entry store holding the indexed records
            max_entries_per_region: Per-cell cap
            clock: Time source (defaults to UTC now)
        """
        if max_entries_per_region < 1:
            raise ValueError(
                f"max_entries_per_region must be >= 1, got {max_entries_per_region}"
            )
        self._store = store
        self._capacity = max_entries_per_region
        self._clock = clock or _utcnow
        self._regions: Dict[RegionId, Region] = {}

    def __len__(self) -> int:
        return len(self._regions)

    @property
    def capacity(self) -> int:
        return self._capacity

    def get_region(self, rid: RegionId) -> Optional[Region]:
        return self._regions.get(rid)

    def regions(self) -> List[Region]:
        return list(self._regions.values())

    def add(self, entry: CacheEntry) -> List[str]:
        """
        Add an entry id to its cell.

        Args:
            entry: Entry to index (its region_id decides the cell)

        Returns:
            Ids of entries evicted to make room
        """
        now = self._clock()
        region = self._regions.get(entry.region_id)
        if region is None:
            region = Region(
                region_id=entry.region_id,
                capacity=self._capacity,
                created_at=now,
            )
            self._regions[entry.region_id] = region
            logger.debug(f"Created region {region.name}")

        if entry.entry_id in region.entry_ids:
            region.last_updated = now
            return []

        evicted: List[str] = []
        try:
            region.append(entry.entry_id)
        except CapacityConflict:
            evicted = self._evict(region, len(region.entry_ids) - self._capacity + 1)
            region.append(entry.entry_id)

        region.last_updated = now
        return evicted

    def _evict(self, region: Region, count: int) -> List[str]:
        """
        Evict the `count` least valuable entries of a region.

        Ids whose store record is already gone sort first; they are stale.
        """
        def sort_key(item: Tuple[int, str]) -> Tuple[Any, ...]:
            position, entry_id = item
            info = self._store.peek(entry_id)
            if info is None:
                return (0, 0, datetime.min.replace(tzinfo=timezone.utc), position)
            return (1, info.access_count, info.created_at, position)

        ranked = sorted(enumerate(region.entry_ids), key=sort_key)
        victims = [entry_id for _, entry_id in ranked[:count]]

        for entry_id in victims:
            region.discard(entry_id)
            self._store.delete(entry_id)

        logger.debug(
            f"Evicted {len(victims)} entries from {region.name} "
            f"(capacity {self._capacity})"
        )
        return victims

    def remove(self, entry_id: str) -> bool:
        """
        Remove an entry id from its cell.

        The cell is found through the entry store record. No-op if the id
        is not indexed.

        Returns:
            True if the id was removed
        """
        info = self._store.peek(entry_id)
        if info is None:
            return False
        region = self._regions.get(info.region_id)
        if region is None or not region.discard(entry_id):
            return False
        region.last_updated = self._clock()
        return True

    def remove_from(self, rid: RegionId, entry_id: str) -> bool:
        """Remove an id from a known cell without consulting the store."""
        region = self._regions.get(rid)
        if region is None or not region.discard(entry_id):
            return False
        region.last_updated = self._clock()
        return True

    def entries_in_region(self, rid: RegionId) -> List[str]:
        """Ids in a cell (copy; empty if the cell does not exist)."""
        region = self._regions.get(rid)
        return list(region.entry_ids) if region is not None else []

    def snapshot(self, rids: Iterable[RegionId]) -> Dict[RegionId, List[str]]:
        """Copy the id lists of the given cells, skipping unknown ones."""
        result: Dict[RegionId, List[str]] = {}
        for rid in rids:
            region = self._regions.get(rid)
            if region is not None and region.entry_ids:
                result[rid] = list(region.entry_ids)
        return result

    def regions_within(
        self, center: RegionId, lat_cells: int, lon_cells: int
    ) -> List[RegionId]:
        """
        Populated cells inside a square neighborhood.

        Scans the populated cells instead of enumerating the square, which
        is cheaper when the square is larger than the index.
        """
        ci, cj = center
        return [
            rid
            for rid, region in self._regions.items()
            if region.entry_ids
            and abs(rid[0] - ci) <= lat_cells
            and abs(rid[1] - cj) <= lon_cells
        ]

    def bump_popularity(self, rid: RegionId, amount: float) -> None:
        region = self._regions.get(rid)
        if region is None:
            return
        region.popularity_score += amount
        region.last_updated = self._clock()

    def popular_regions(self, limit: Optional[int] = None) -> List[Region]:
        """Regions sorted by popularity, most popular first."""
        ranked = sorted(
            self._regions.values(),
            key=lambda r: (-r.popularity_score, r.region_id),
        )
        return ranked[:limit] if limit is not None else ranked

    def restore_popularity(self, rid: RegionId, popularity_score: float) -> None:
        """Set a cell's popularity, creating the cell if needed (snapshot reload)."""
        region = self._regions.get(rid)
        if region is None:
            region = Region(region_id=rid, capacity=self._capacity, created_at=self._clock())
            self._regions[rid] = region
        region.popularity_score = popularity_score

    def prune_empty(self) -> int:
        """
        Drop cells without entries and without popularity.

        Returns:
            Number of cells dropped
        """
        empty = [
            rid
            for rid, region in self._regions.items()
            if not region.entry_ids and region.popularity_score <= 0
        ]
        for rid in empty:
            del self._regions[rid]
        if empty:
            logger.debug(f"Pruned {len(empty)} empty regions")
        return len(empty)

    def clear(self) -> int:
        count = len(self._regions)
        self._regions.clear()
        return count
