"""
Tests for the entry store and the region index.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from geocache.exceptions import CapacityConflict
from geocache.index import Region, RegionIndex
from geocache.store import CacheEntry, EntryStore, Location, make_entry_id

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_entry(
    content_id: str,
    lat: float = 59.9139,
    lon: float = 10.7522,
    created_at: datetime = NOW,
    ttl_hours: float = 1.0,
    access_count: int = 0,
    region=(5991, 1075),
) -> CacheEntry:
    return CacheEntry(
        entry_id=make_entry_id(lat, lon, content_id),
        content_id=content_id,
        location=Location(lat, lon),
        region_id=region,
        content={"title": content_id},
        created_at=created_at,
        last_accessed_at=created_at,
        expires_at=created_at + timedelta(hours=ttl_hours),
        access_count=access_count,
    )


# ==============================================================================
# Entry Store Tests
# ==============================================================================


class TestCacheEntry:
    """Tests for CacheEntry."""

    def test_entry_id_quantizes_coordinates(self):
        """Test ids use 4 decimals."""
        assert make_entry_id(59.913912, 10.75224, "s1") == "59.9139_10.7522_s1"

    def test_is_expired(self):
        """Test expiry is strict."""
        entry = make_entry("s1")
        assert not entry.is_expired(entry.expires_at)
        assert entry.is_expired(entry.expires_at + timedelta(microseconds=1))

    def test_to_from_dict(self):
        """Test serialization."""
        entry = make_entry("s1")
        entry.tags = {"oslo", "gate"}

        restored = CacheEntry.from_dict(entry.to_dict())

        assert restored == entry
        assert restored.region_id == (5991, 1075)

    def test_copy_detaches_metadata(self):
        """Test copies detach metadata and share the content payload."""
        entry = make_entry("s1")
        clone = entry.copy()
        clone.tags.add("new")
        clone.location.latitude = 0.0

        assert "new" not in entry.tags
        assert entry.location.latitude == 59.9139
        assert clone.content is entry.content

    def test_copy_accepts_uncopyable_content(self):
        """Test content that cannot be deep-copied is passed through."""
        handle = threading.Lock()
        entry = make_entry("s1")
        entry.content = {"audio": handle}

        assert entry.copy().content["audio"] is handle


class TestEntryStore:
    """Tests for EntryStore."""

    def test_put_get_delete(self):
        """Test basic operations."""
        store = EntryStore()
        entry = make_entry("s1")
        store.put(entry)

        assert entry.entry_id in store
        assert len(store) == 1
        assert store.get(entry.entry_id) == entry
        assert store.delete(entry.entry_id) is True
        assert store.delete(entry.entry_id) is False
        assert store.get(entry.entry_id) is None

    def test_get_returns_copy(self):
        """Test mutating a returned entry does not change the store."""
        store = EntryStore()
        store.put(make_entry("s1"))

        fetched = store.get(make_entry_id(59.9139, 10.7522, "s1"))
        fetched.access_count = 99

        assert store.peek(fetched.entry_id).access_count == 0

    def test_touch(self):
        """Test touch updates access bookkeeping."""
        store = EntryStore()
        entry = make_entry("s1")
        store.put(entry)

        touched = store.touch(entry.entry_id, NOW + timedelta(minutes=5), 0.1)

        assert touched.access_count == 1
        assert touched.popularity_score == pytest.approx(1.1)
        assert touched.last_accessed_at == NOW + timedelta(minutes=5)

    def test_touch_missing(self):
        """Test touching an unknown id."""
        assert EntryStore().touch("missing", NOW) is None

    def test_touch_never_precedes_creation(self):
        """Test last_accessed_at >= created_at."""
        store = EntryStore()
        entry = make_entry("s1")
        store.put(entry)

        touched = store.touch(entry.entry_id, NOW - timedelta(hours=1))

        assert touched.last_accessed_at == entry.created_at

    def test_concurrent_touch(self):
        """Test concurrent touches never lose an update."""
        store = EntryStore()
        entry = make_entry("s1")
        store.put(entry)

        def worker():
            for _ in range(200):
                store.touch(entry.entry_id, NOW, 0.1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = store.get(entry.entry_id)
        assert final.access_count == 1600
        assert final.popularity_score == pytest.approx(1.0 + 160.0)

    def test_expired_ids(self):
        """Test expired id collection."""
        store = EntryStore()
        store.put(make_entry("short", ttl_hours=1))
        store.put(make_entry("long", ttl_hours=10))

        expired = store.expired_ids(NOW + timedelta(hours=2))

        assert expired == [make_entry_id(59.9139, 10.7522, "short")]

    def test_sample_most_recent_first(self):
        """Test sampling order."""
        store = EntryStore()
        for i in range(5):
            store.put(make_entry(f"s{i}"))

        sample = store.sample(3)

        assert [e.content_id for e in sample] == ["s4", "s3", "s2"]

    def test_update(self):
        """Test field updates."""
        store = EntryStore()
        entry = make_entry("s1")
        store.put(entry)

        updated = store.update(entry.entry_id, popularity_score=4.0)

        assert updated.popularity_score == 4.0
        assert store.update("missing", popularity_score=1.0) is None

    def test_clear(self):
        """Test clearing."""
        store = EntryStore()
        store.put(make_entry("s1"))
        store.put(make_entry("s2"))

        assert store.clear() == 2
        assert len(store) == 0


# ==============================================================================
# Region Index Tests
# ==============================================================================


class TestRegion:
    """Tests for Region."""

    def test_append_beyond_capacity(self):
        """Test a full region refuses new ids."""
        region = Region(region_id=(1, 2), capacity=1)
        region.append("a")

        with pytest.raises(CapacityConflict):
            region.append("b")

    def test_to_dict_with_geometry(self):
        """Test region serialization includes bounds and center."""
        region = Region(region_id=(5991, 1075), capacity=10, entry_ids=["a"])

        data = region.to_dict(0.01)

        assert data["id"] == "region_5991_1075"
        assert data["entry_count"] == 1
        assert data["bounds"]["south"] == pytest.approx(59.91)
        assert data["center"]["longitude"] == pytest.approx(10.755)


class TestRegionIndex:
    """Tests for RegionIndex."""

    def _add(self, store, index, entry):
        evicted = index.add(entry)
        store.put(entry)
        return evicted

    def test_add_creates_region(self):
        """Test regions are created lazily."""
        store = EntryStore()
        index = RegionIndex(store, 10)

        self._add(store, index, make_entry("s1"))

        assert len(index) == 1
        assert index.entries_in_region((5991, 1075)) == [make_entry_id(59.9139, 10.7522, "s1")]

    def test_add_is_idempotent(self):
        """Test re-adding an id does not duplicate it."""
        store = EntryStore()
        index = RegionIndex(store, 10)
        entry = make_entry("s1")

        self._add(store, index, entry)
        assert index.add(entry) == []

        assert len(index.entries_in_region((5991, 1075))) == 1

    def test_capacity_evicts_oldest_on_tie(self):
        """Test X is evicted when X, Y, Z share access counts."""
        store = EntryStore()
        index = RegionIndex(store, 2)
        x = make_entry("x", created_at=NOW)
        y = make_entry("y", created_at=NOW + timedelta(seconds=1))
        z = make_entry("z", created_at=NOW + timedelta(seconds=2))

        self._add(store, index, x)
        self._add(store, index, y)
        evicted = self._add(store, index, z)

        assert evicted == [x.entry_id]
        assert index.entries_in_region((5991, 1075)) == [y.entry_id, z.entry_id]
        assert x.entry_id not in store

    def test_capacity_prefers_low_access(self):
        """Test frequently read entries survive eviction."""
        store = EntryStore()
        index = RegionIndex(store, 2)
        x = make_entry("x", created_at=NOW, access_count=5)
        y = make_entry("y", created_at=NOW + timedelta(seconds=1))

        self._add(store, index, x)
        self._add(store, index, y)
        evicted = self._add(store, index, make_entry("z", created_at=NOW + timedelta(seconds=2)))

        assert evicted == [y.entry_id]

    def test_remove(self):
        """Test removal locates the region through the store."""
        store = EntryStore()
        index = RegionIndex(store, 10)
        entry = make_entry("s1")
        self._add(store, index, entry)

        assert index.remove(entry.entry_id) is True
        assert index.remove(entry.entry_id) is False
        assert index.entries_in_region((5991, 1075)) == []

    def test_regions_within(self):
        """Test populated cells inside a neighborhood."""
        store = EntryStore()
        index = RegionIndex(store, 10)
        self._add(store, index, make_entry("a", region=(0, 0)))
        self._add(store, index, make_entry("b", region=(2, 0)))
        self._add(store, index, make_entry("c", region=(0, 5)))

        assert sorted(index.regions_within((0, 0), 2, 2)) == [(0, 0), (2, 0)]

    def test_popular_regions_and_prune(self):
        """Test popularity ordering and pruning of empty cells."""
        store = EntryStore()
        index = RegionIndex(store, 10)
        a = make_entry("a", region=(0, 0))
        b = make_entry("b", region=(1, 1))
        self._add(store, index, a)
        self._add(store, index, b)
        index.bump_popularity((1, 1), 2.0)

        assert [r.region_id for r in index.popular_regions()] == [(1, 1), (0, 0)]

        index.remove(a.entry_id)
        index.remove(b.entry_id)

        assert index.prune_empty() == 1
        assert index.get_region((0, 0)) is None
        assert index.get_region((1, 1)) is not None

    def test_invalid_capacity(self):
        """Test capacity must be positive."""
        with pytest.raises(ValueError):
            RegionIndex(EntryStore(), 0)
