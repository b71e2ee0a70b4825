"""
Cache Manager for Location-Bound Content.

Orchestrates the entry store and the region index:
- Insertion with popularity scoring and synchronous per-region eviction
- Lookup by id with lazy expiry
- Proximity search ranked by a distance/popularity blend
- Expiry sweeps, run on demand or by a background thread
- Read-through generation and pre-warming of popular regions
- Best-effort write-behind persistence through a snapshot backend

The caller constructs one CacheManager and shares it; there is no module
level instance.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, List, Optional, Set, Tuple

import numpy as np

from geocache.config import CacheConfig
from geocache.enrichment import (
    Enrichment,
    GeneratedContent,
    auto_tags,
    initial_popularity,
)
from geocache.exceptions import CacheLockTimeout, CacheValidationError, TransientStorageError
from geocache.geometry import (
    METERS_PER_DEGREE,
    RegionId,
    candidate_regions,
    cell_center,
    haversine_distance,
    parse_region_name,
    region_id,
    search_rings,
    validate_coordinates,
    validate_radius,
)
from geocache.index import RegionIndex
from geocache.persistence import (
    SnapshotBackend,
    SQLiteSnapshotBackend,
    WriteBehindQueue,
    call_with_retry,
)
from geocache.stats import CacheStatistics, StatsRecorder, summarize
from geocache.store import CacheEntry, EntryStore, Location, make_entry_id

logger = logging.getLogger(__name__)

ContentGenerator = Callable[[float, float], GeneratedContent]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SearchOptions:
    """
    Options of a proximity search.

    Attributes:
        limit: Maximum number of results (None = all)
        min_popularity: Drop entries with a lower popularity score
        max_age_hours: Drop entries created longer ago than this
        include_expired: Return expired entries that are still present
        tags: Keep only entries carrying at least one of these tags
    """

    limit: Optional[int] = None
    min_popularity: Optional[float] = None
    max_age_hours: Optional[float] = None
    include_expired: bool = False
    tags: Optional[Set[str]] = None

    def __post_init__(self):
        """Validate options."""
        if self.limit is not None and (
            isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1
        ):
            raise CacheValidationError(
                f"limit must be a positive integer, got {self.limit}", {"limit": self.limit}
            )
        if self.max_age_hours is not None and self.max_age_hours <= 0:
            raise CacheValidationError(
                f"max_age_hours must be > 0, got {self.max_age_hours}",
                {"max_age_hours": self.max_age_hours},
            )
        if isinstance(self.tags, str):
            self.tags = {self.tags}
        elif self.tags is not None:
            self.tags = set(self.tags)


@dataclass
class NearbyResult:
    """
    A proximity search hit.

    Attributes:
        entry: The matched entry (after its access was recorded)
        distance_meters: Great-circle distance to the query point
        rank: distance/100 - popularity; lower ranks first
    """

    entry: CacheEntry
    distance_meters: float
    rank: float


class CacheManager:
    """
    Thread-safe geospatial content cache.

    One re-entrant lock serializes structural changes (region index and
    entry-store membership); the entry store has its own lock for record
    updates, so reads only wait for the short critical sections they need.
    Lock order is always manager lock, then store lock.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        snapshot_backend: Optional[SnapshotBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize cache manager.

        Args:
            config: Cache configuration (defaults if None)
            snapshot_backend: Persistence collaborator; when None and
                config.snapshot_path is set, a SQLite backend is created
            clock: Time source returning aware UTC datetimes
        """
        self.config = config or CacheConfig()
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._store = EntryStore()
        self._index = RegionIndex(
            self._store, self.config.max_entries_per_region, clock=self._clock
        )
        self._stats = StatsRecorder()

        if snapshot_backend is None and self.config.snapshot_path:
            snapshot_backend = SQLiteSnapshotBackend(self.config.snapshot_path)
        self.snapshot_backend = snapshot_backend
        self._write_behind: Optional[WriteBehindQueue] = None
        if snapshot_backend is not None:
            self._write_behind = WriteBehindQueue(
                snapshot_backend, self.config.write_behind_interval_seconds
            )
            self._write_behind.start()

        self._expiry_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="geocache-expire"
        )
        self._cleanup_thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self._closed = False

        logger.info(
            f"CacheManager initialized with cell={self.config.cell_size_degrees}deg, "
            f"max_per_region={self.config.max_entries_per_region}, "
            f"ttl={self.config.default_ttl_hours}h, "
            f"persistence={'on' if snapshot_backend is not None else 'off'}"
        )

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def index(self) -> RegionIndex:
        return self._index

    def __len__(self) -> int:
        return len(self._store)

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        """Hold the manager lock, giving up after lock_timeout_seconds."""
        timeout = self.config.lock_timeout_seconds
        if not self._lock.acquire(timeout=timeout):
            raise CacheLockTimeout(operation, timeout)
        try:
            yield
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Insert / lookup / remove
    # ------------------------------------------------------------------

    def insert(
        self,
        latitude: float,
        longitude: float,
        content: Any,
        content_id: str,
        enrichment: Optional[Enrichment] = None,
        tags: Optional[Iterable[str]] = None,
        ttl_hours: Optional[float] = None,
        accuracy: float = 10.0,
        popularity: Optional[float] = None,
    ) -> Tuple[str, List[str]]:
        """
        Store content for a location.

        Re-inserting the same (quantized location, content id) updates the
        existing entry in place: content, tags and enrichment are replaced,
        the TTL restarts and popularity keeps the higher of old and new.

        Args:
            latitude: Latitude in degrees
            longitude: Longitude in degrees
            content: Opaque payload
            content_id: Generator-assigned content id
            enrichment: Enrichment record for scoring and auto tags
            tags: Extra caller tags
            ttl_hours: Lifetime (defaults to config.default_ttl_hours)
            accuracy: Location accuracy in meters
            popularity: Explicit popularity score, skipping the heuristic

        Returns:
            (entry_id, ids evicted to make room)

        Raises:
            CacheValidationError: On bad coordinates, TTL or content id
            CacheLockTimeout: If the cache lock is not available in time
        """
        validate_coordinates(latitude, longitude)
        ttl = self.config.default_ttl_hours if ttl_hours is None else ttl_hours
        if not isinstance(ttl, (int, float)) or not math.isfinite(ttl) or ttl <= 0:
            raise CacheValidationError(
                f"ttl_hours must be > 0, got {ttl_hours}", {"ttl_hours": ttl_hours}
            )
        if not content_id:
            raise CacheValidationError("content_id must be a non-empty string")

        entry_id = make_entry_id(latitude, longitude, str(content_id))
        if popularity is None:
            popularity = initial_popularity(
                enrichment, self.config.popularity, self.config.popular_regions
            )
        all_tags = set(tags or ()) | auto_tags(enrichment)

        with self._locked("insert"):
            now = self._clock()
            expires_at = now + timedelta(hours=ttl)
            existing = self._store.peek(entry_id)

            if existing is not None:
                current = self._store.get(entry_id)
                stored = self._store.update(
                    entry_id,
                    content=content,
                    enrichment=enrichment,
                    tags=all_tags,
                    expires_at=expires_at,
                    popularity_score=max(current.popularity_score, popularity),
                )
                evicted = self._index.add(stored)
                operation = "story_updated"
            else:
                stored = CacheEntry(
                    entry_id=entry_id,
                    content_id=str(content_id),
                    location=Location(latitude, longitude, accuracy),
                    region_id=region_id(latitude, longitude, self.config.cell_size_degrees),
                    content=content,
                    created_at=now,
                    last_accessed_at=now,
                    expires_at=expires_at,
                    access_count=0,
                    popularity_score=popularity,
                    tags=all_tags,
                    enrichment=enrichment,
                )
                # Index first; the record becomes visible to readers last
                evicted = self._index.add(stored)
                try:
                    self._store.put(stored)
                except Exception:
                    self._index.remove_from(stored.region_id, entry_id)
                    raise
                operation = "story_cached"

            self._stats.record_operation(operation)
            self._stats.record_evictions(len(evicted))

        if self._write_behind is not None:
            self._write_behind.schedule_put(stored)
            for evicted_id in evicted:
                self._write_behind.schedule_delete(evicted_id)

        logger.debug(
            f"Cached entry {entry_id} in region {stored.region_id} "
            f"(popularity={stored.popularity_score:.2f}, evicted={len(evicted)})"
        )
        return entry_id, evicted

    def get(self, entry_id: str) -> Optional[CacheEntry]:
        """
        Get an entry and record the access.

        Unknown and expired ids are misses. An expired entry is removed in
        the background.

        Args:
            entry_id: Entry id to look up

        Returns:
            CacheEntry if found and live, None otherwise
        """
        info = self._store.peek(entry_id)
        if info is None:
            self._stats.record_miss()
            return None

        now = self._clock()
        if now > info.expires_at:
            self._stats.record_miss()
            self._schedule_expiry(entry_id)
            return None

        entry = self._store.touch(entry_id, now, self.config.popularity.access_increment)
        if entry is None:
            self._stats.record_miss()
            return None

        self._stats.record_hit()
        self._after_access([entry])
        return entry

    def contains(self, entry_id: str) -> bool:
        """Check if an entry exists and is live, without recording an access."""
        info = self._store.peek(entry_id)
        return info is not None and not self._clock() > info.expires_at

    def remove(self, entry_id: str) -> bool:
        """
        Remove an entry from both indexes.

        Returns:
            True if the entry existed
        """
        with self._locked("remove"):
            self._index.remove(entry_id)
            removed = self._store.delete(entry_id)
            if removed:
                self._stats.record_operation("story_removed")

        if removed:
            if self._write_behind is not None:
                self._write_behind.schedule_delete(entry_id)
            logger.debug(f"Removed cache entry: {entry_id}")
        return removed

    # ------------------------------------------------------------------
    # Proximity search
    # ------------------------------------------------------------------

    def find_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: Optional[float] = None,
        options: Optional[SearchOptions] = None,
        **option_overrides: Any,
    ) -> List[NearbyResult]:
        """
        Find live entries within a radius, best first.

        Results are ranked by distance/100 - popularity (ascending, ties by
        entry id) and every returned entry has its access recorded.

        Args:
            latitude: Query latitude
            longitude: Query longitude
            radius_meters: Search radius (defaults to config.default_radius_meters)
            options: Search options
            **option_overrides: SearchOptions fields given as keywords

        Returns:
            List of NearbyResult, possibly empty

        Raises:
            CacheValidationError: On bad coordinates, radius or options
        """
        options = self._resolve_options(options, option_overrides)
        return self._search(latitude, longitude, radius_meters, options, touch=True)

    def find_nearby_entries(
        self,
        latitude: float,
        longitude: float,
        radius_meters: Optional[float] = None,
        options: Optional[SearchOptions] = None,
        **option_overrides: Any,
    ) -> List[CacheEntry]:
        """Same as find_nearby, returning only the entries."""
        results = self.find_nearby(
            latitude, longitude, radius_meters, options, **option_overrides
        )
        return [r.entry for r in results]

    @staticmethod
    def _resolve_options(
        options: Optional[SearchOptions], overrides: dict
    ) -> SearchOptions:
        if options is None:
            return SearchOptions(**overrides)
        if overrides:
            return replace(options, **overrides)
        return options

    def _search(
        self,
        latitude: float,
        longitude: float,
        radius_meters: Optional[float],
        options: SearchOptions,
        touch: bool,
    ) -> List[NearbyResult]:
        validate_coordinates(latitude, longitude)
        radius = self.config.default_radius_meters if radius_meters is None else radius_meters
        validate_radius(radius)

        cell = self.config.cell_size_degrees
        center = region_id(latitude, longitude, cell)
        lat_cells, lon_cells = search_rings(latitude, radius, cell)
        square = (2 * lat_cells + 1) * (2 * lon_cells + 1)

        with self._locked("find_nearby"):
            if square > len(self._index):
                rids = self._index.regions_within(center, lat_cells, lon_cells)
            else:
                rids = candidate_regions(latitude, longitude, radius, cell)
            id_lists = self._index.snapshot(rids)

        # Entries removed after the snapshot are skipped here
        entries = [
            entry
            for ids in id_lists.values()
            for entry in (self._store.get(entry_id) for entry_id in ids)
            if entry is not None
        ]
        if not entries:
            if touch:
                self._stats.record_miss()
            return []

        lats = np.array([e.location.latitude for e in entries], dtype=float)
        lons = np.array([e.location.longitude for e in entries], dtype=float)
        distances = haversine_distance(latitude, longitude, lats, lons)

        now = self._clock()
        cutoff = (
            now - timedelta(hours=options.max_age_hours)
            if options.max_age_hours is not None
            else None
        )

        results: List[NearbyResult] = []
        for entry, dist in zip(entries, distances):
            dist = float(dist)
            if dist > radius:
                continue
            if not options.include_expired and entry.is_expired(now):
                continue
            if options.min_popularity is not None and entry.popularity_score < options.min_popularity:
                continue
            if cutoff is not None and entry.created_at < cutoff:
                continue
            if options.tags and not (entry.tags & options.tags):
                continue
            results.append(
                NearbyResult(
                    entry=entry,
                    distance_meters=dist,
                    rank=dist / 100 - entry.popularity_score,
                )
            )

        results.sort(key=lambda r: (r.rank, r.entry.entry_id))
        if options.limit is not None:
            results = results[: options.limit]

        if touch:
            results = self._touch_results(results, now)
            if results:
                self._stats.record_hit()
            else:
                self._stats.record_miss()

        logger.debug(
            f"Nearby search at ({latitude:.5f}, {longitude:.5f}) r={radius}m: "
            f"{len(results)} of {len(entries)} candidates"
        )
        return results

    def _touch_results(
        self, results: List[NearbyResult], now: datetime
    ) -> List[NearbyResult]:
        increment = self.config.popularity.access_increment
        touched: List[NearbyResult] = []
        for result in results:
            entry = self._store.touch(result.entry.entry_id, now, increment)
            if entry is None:
                continue
            touched.append(replace(result, entry=entry))
        self._after_access([r.entry for r in touched])
        return touched

    def _after_access(self, entries: List[CacheEntry]) -> None:
        """Bump region popularity and schedule write-behind for read entries."""
        if not entries:
            return

        increment = self.config.popularity.access_increment
        region_records = []
        # Region popularity is advisory; skip it rather than block a read
        if self._lock.acquire(timeout=self.config.lock_timeout_seconds):
            try:
                for entry in entries:
                    self._index.bump_popularity(entry.region_id, increment)
                if self._write_behind is not None:
                    for rid in {e.region_id for e in entries}:
                        region = self._index.get_region(rid)
                        if region is not None:
                            region_records.append(region.to_dict())
            finally:
                self._lock.release()
        else:
            logger.debug("Skipped region popularity update: cache lock busy")

        if self._write_behind is not None:
            for entry in entries:
                self._write_behind.schedule_put(entry)
            for record in region_records:
                self._write_behind.schedule_region(record)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _schedule_expiry(self, entry_id: str) -> None:
        if self._closed:
            return
        try:
            self._expiry_executor.submit(self._remove_if_expired, entry_id)
        except RuntimeError as e:
            logger.debug(f"Expiry of {entry_id} left to the next sweep: {e}")

    def _remove_if_expired(self, entry_id: str) -> bool:
        """Remove an entry if it is still expired (it may have been refreshed)."""
        try:
            with self._locked("expire"):
                info = self._store.peek(entry_id)
                if info is None or not self._clock() > info.expires_at:
                    return False
                self._index.remove_from(info.region_id, entry_id)
                self._store.delete(entry_id)
        except CacheLockTimeout as e:
            logger.debug(f"Deferred expiry of {entry_id} to next sweep: {e}")
            return False

        self._stats.record_expirations(1)
        if self._write_behind is not None:
            self._write_behind.schedule_delete(entry_id)
        logger.debug(f"Expired cache entry: {entry_id}")
        return True

    def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """
        Remove all expired entries.

        Expired ids are collected first and removed in batches of
        config.sweep_batch_size, releasing the lock between batches so
        concurrent callers are never blocked for a whole sweep.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            Number of entries removed
        """
        now = now or self._clock()
        expired = self._store.expired_ids(now)
        batch_size = self.config.sweep_batch_size
        removed: List[str] = []

        try:
            for start in range(0, len(expired), batch_size):
                with self._locked("expire_sweep"):
                    for entry_id in expired[start:start + batch_size]:
                        info = self._store.peek(entry_id)
                        if info is None or not now > info.expires_at:
                            continue
                        self._index.remove_from(info.region_id, entry_id)
                        self._store.delete(entry_id)
                        removed.append(entry_id)

            if self.config.prune_empty_regions:
                with self._locked("expire_sweep"):
                    self._index.prune_empty()
        finally:
            # Account for completed batches even when a later one times out
            self._stats.record_expirations(len(removed))
            self._stats.record_operation("cleanup", len(removed))
            if self._write_behind is not None:
                for entry_id in removed:
                    self._write_behind.schedule_delete(entry_id)

        if removed:
            logger.info(f"Cache cleanup completed: removed {len(removed)} expired entries")
        return len(removed)

    def start_cleanup_thread(self) -> None:
        """Start the background expiry sweep thread."""
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return

        self._shutdown_event.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            daemon=True,
            name="geocache-cleanup",
        )
        self._cleanup_thread.start()
        logger.info(
            f"Started cache cleanup thread (interval={self.config.cleanup_interval_hours}h)"
        )

    def stop_cleanup_thread(self, timeout: float = 5.0) -> None:
        """
        Stop the background cleanup thread.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        if self._cleanup_thread is None or not self._cleanup_thread.is_alive():
            return

        self._shutdown_event.set()
        self._cleanup_thread.join(timeout=timeout)
        logger.info("Stopped cache cleanup thread")

    def _cleanup_loop(self) -> None:
        """Background cleanup loop."""
        while not self._shutdown_event.wait(timeout=self.config.cleanup_interval_seconds):
            try:
                self.expire_sweep()
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

    # ------------------------------------------------------------------
    # Read-through and pre-warming
    # ------------------------------------------------------------------

    def get_or_generate(
        self,
        latitude: float,
        longitude: float,
        generator: ContentGenerator,
        radius_meters: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        ttl_hours: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """
        Return the best cached entry near a point, generating one on a miss.

        Args:
            latitude: Query latitude
            longitude: Query longitude
            generator: Called as generator(latitude, longitude) on a miss
            radius_meters: Search radius (defaults to config.default_radius_meters)
            tags: Extra tags for newly generated entries
            ttl_hours: Lifetime of newly generated entries

        Returns:
            The cached or newly stored entry (None only if it was removed
            concurrently right after insertion)
        """
        hits = self.find_nearby(latitude, longitude, radius_meters, limit=1)
        if hits:
            return hits[0].entry

        generated = generator(latitude, longitude)
        entry_id, _ = self.insert(
            latitude,
            longitude,
            generated.content,
            generated.content_id,
            enrichment=generated.enrichment,
            tags=set(tags or ()) | set(generated.tags),
            ttl_hours=ttl_hours,
        )
        self._stats.record_operation("story_generated")
        return self._store.get(entry_id)

    def popular_regions(self, limit: Optional[int] = None) -> List[dict]:
        """Region records (with bounds and center), most popular first."""
        with self._locked("popular_regions"):
            return [
                region.to_dict(self.config.cell_size_degrees)
                for region in self._index.popular_regions(limit)
            ]

    def preload_popular_regions(
        self, generator: Optional[ContentGenerator] = None, limit: int = 10
    ) -> int:
        """
        Pre-warm the most popular regions.

        Each region's popularity is bumped; with a generator, content is
        generated at the region center when no live entry covers it.

        Args:
            generator: Optional content generator
            limit: Number of regions to pre-warm

        Returns:
            Number of regions processed
        """
        with self._locked("preload"):
            rids: List[RegionId] = [r.region_id for r in self._index.popular_regions(limit)]
        logger.info(f"Starting preload for popular regions (count={len(rids)})")

        cell = self.config.cell_size_degrees
        radius = cell * METERS_PER_DEGREE / 2
        generated = 0
        for rid in rids:
            with self._locked("preload"):
                self._index.bump_popularity(rid, 1.0)
                region = self._index.get_region(rid)
                record = region.to_dict() if region is not None else None
            if record is not None and self._write_behind is not None:
                self._write_behind.schedule_region(record)

            if generator is None:
                continue
            lat, lon = cell_center(rid, cell)
            if self._search(lat, lon, radius, SearchOptions(limit=1), touch=False):
                continue
            content = generator(lat, lon)
            self.insert(
                lat,
                lon,
                content.content,
                content.content_id,
                enrichment=content.enrichment,
                tags=content.tags,
            )
            generated += 1

        self._stats.record_operation("preload", len(rids))
        logger.info(
            f"Popular regions preload completed (regions={len(rids)}, generated={generated})"
        )
        return len(rids)

    # ------------------------------------------------------------------
    # Statistics, persistence, lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> CacheStatistics:
        """
        Get cache statistics.

        Size and age are estimated from the config.stats_sample_size most
        recently inserted entries.
        """
        now = self._clock()
        sample = self._store.sample(self.config.stats_sample_size)
        with self._locked("stats"):
            total_regions = len(self._index)
            popular = [
                r.name for r in self._index.popular_regions(5) if r.popularity_score > 0
            ]
        return summarize(
            sample, len(self._store), total_regions, now, self._stats, popular
        )

    def clear(self) -> int:
        """
        Remove every entry and region, and reset statistics.

        Returns:
            Number of entries removed
        """
        with self._locked("clear"):
            count = self._store.clear()
            self._index.clear()
            self._stats.reset()

        if self._write_behind is not None:
            try:
                self._write_behind.clear_backend()
            except TransientStorageError as e:
                logger.warning(f"Snapshot clear failed: {e}")

        logger.info(f"Cache cleared ({count} entries)")
        return count

    def load_snapshot(self) -> int:
        """
        Seed the cache from the snapshot backend.

        Expired and unreadable records are skipped and deleted from the
        snapshot. Entries keep the region assigned when they were inserted.

        Returns:
            Number of entries loaded

        Raises:
            TransientStorageError: If the backend fails twice
        """
        if self.snapshot_backend is None:
            return 0

        records = call_with_retry("load_entries", self.snapshot_backend.load_entries)
        region_records = call_with_retry("load_regions", self.snapshot_backend.load_regions)

        now = self._clock()
        loaded = 0
        stale: List[str] = []
        with self._locked("load_snapshot"):
            for data in records:
                try:
                    entry = CacheEntry.from_dict(data)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable snapshot entry: {e}")
                    if isinstance(data, dict) and "entry_id" in data:
                        stale.append(data["entry_id"])
                    continue

                if entry.is_expired(now):
                    stale.append(entry.entry_id)
                    continue
                if entry.entry_id in self._store:
                    continue

                stale.extend(self._index.add(entry))
                self._store.put(entry)
                loaded += 1

            for record in region_records:
                try:
                    rid = parse_region_name(record["id"])
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping unreadable snapshot region: {e}")
                    continue
                self._index.restore_popularity(rid, float(record.get("popularity_score", 0.0)))

        if self._write_behind is not None:
            for entry_id in stale:
                self._write_behind.schedule_delete(entry_id)

        logger.info(f"Loaded {loaded} entries from snapshot ({len(stale)} stale)")
        return loaded

    def flush(self) -> int:
        """
        Write pending changes to the snapshot backend now.

        Returns:
            Number of records written
        """
        if self._write_behind is None:
            return 0
        return self._write_behind.flush()

    def close(self, timeout: float = 5.0) -> None:
        """Stop background threads and flush pending writes."""
        if self._closed:
            return
        self._closed = True
        self.stop_cleanup_thread(timeout=timeout)
        self._expiry_executor.shutdown(wait=True)
        if self._write_behind is not None:
            self._write_behind.stop(timeout=timeout)
        logger.info("CacheManager closed")
