"""
Geospatial Cache for Location-Bound Stories.

Provides an in-memory, thread-safe cache for generated content bound to a
latitude/longitude, so content is generated once per place and reused by
everyone nearby.

Components:
- Grid region index for proximity lookups
- Entry store with atomic access tracking
- Cache manager with TTL expiry, per-region eviction and popularity ranking
- Best-effort snapshot persistence (memory, SQLite) behind a write-behind queue

Example usage:
    from geocache import (
        CacheConfig,
        CacheManager,
        Enrichment,
        GeneratedContent,
        RegionInfo,
    )

    config = CacheConfig(
        max_entries_per_region=100,
        default_ttl_hours=168,  # 7 days
    )

    with CacheManager(config=config) as cache:
        entry_id, evicted = cache.insert(
            59.9139, 10.7522,
            content={"title": "Karl Johans gate"},
            content_id="story-1",
            enrichment=Enrichment(
                nearby_places=["Slottet", "Stortinget"],
                region=RegionInfo(municipality="Oslo", county="Oslo"),
            ),
        )

        # Best stories within 500 m
        results = cache.find_nearby(59.9140, 10.7525, 500, limit=5)

        # Read-through: generate only when nothing is cached nearby
        entry = cache.get_or_generate(59.9139, 10.7522, generate_story)
"""

from geocache.config import (
    CacheConfig,
    PopularityWeights,
    load_config,
)

from geocache.enrichment import (
    Enrichment,
    GeneratedContent,
    RegionInfo,
    auto_tags,
    initial_popularity,
)

from geocache.exceptions import (
    CacheLockTimeout,
    CacheValidationError,
    CapacityConflict,
    GeoCacheError,
    TransientStorageError,
)

from geocache.geometry import (
    candidate_regions,
    distance,
    haversine_distance,
    region_id,
    region_name,
)

from geocache.index import (
    Region,
    RegionIndex,
)

from geocache.manager import (
    CacheManager,
    NearbyResult,
    SearchOptions,
)

from geocache.persistence import (
    MemorySnapshotBackend,
    SnapshotBackend,
    SQLiteSnapshotBackend,
    WriteBehindQueue,
)

from geocache.stats import CacheStatistics

from geocache.store import (
    CacheEntry,
    EntryStore,
    Location,
    make_entry_id,
)

__all__ = [
    # Config
    "CacheConfig",
    "PopularityWeights",
    "load_config",
    # Enrichment
    "Enrichment",
    "GeneratedContent",
    "RegionInfo",
    "auto_tags",
    "initial_popularity",
    # Exceptions
    "CacheLockTimeout",
    "CacheValidationError",
    "CapacityConflict",
    "GeoCacheError",
    "TransientStorageError",
    # Geometry
    "candidate_regions",
    "distance",
    "haversine_distance",
    "region_id",
    "region_name",
    # Index
    "Region",
    "RegionIndex",
    # Manager
    "CacheManager",
    "NearbyResult",
    "SearchOptions",
    # Persistence
    "MemorySnapshotBackend",
    "SnapshotBackend",
    "SQLiteSnapshotBackend",
    "WriteBehindQueue",
    # Stats
    "CacheStatistics",
    # Store
    "CacheEntry",
    "EntryStore",
    "Location",
    "make_entry_id",
]

__version__ = "0.1.0"
