"""
Pytest configuration and fixtures for geocache tests.

Markers:
    @pytest.mark.slow - Tests that take longer to run
    @pytest.mark.concurrency - Multi-threaded tests
    @pytest.mark.persistence - Snapshot backend tests

Usage:
    pytest -m "not slow"         # Skip slow tests
    pytest -m persistence        # Run snapshot tests only
"""

import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from geocache.config import CacheConfig
from geocache.enrichment import Enrichment, RegionInfo


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: Slow-running tests")
    config.addinivalue_line("markers", "concurrency: Multi-threaded tests")
    config.addinivalue_line("markers", "persistence: Snapshot backend tests")


def pytest_collection_modifyitems(config, items):
    """Auto-apply markers based on test file names and test names."""
    for item in items:
        if "persistence" in item.fspath.basename:
            item.add_marker(pytest.mark.persistence)

        test_name = item.name.lower()
        if "concurrent" in test_name or "threads" in test_name:
            item.add_marker(pytest.mark.concurrency)
        if "large" in test_name or "stress" in test_name:
            item.add_marker(pytest.mark.slow)


class MutableClock:
    """Deterministic clock that tests advance by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Provide a clock fixed at 2024-06-01 12:00 UTC."""
    return MutableClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    """Provide a small cache configuration."""
    return CacheConfig(
        max_entries_per_region=100,
        default_ttl_hours=168,
        stats_sample_size=50,
        lock_timeout_seconds=1.0,
    )


@pytest.fixture
def oslo_enrichment():
    """Enrichment in a popular county with five landmarks (score 3.0)."""
    return Enrichment(
        address="Karl Johans gate 1, Oslo",
        nearby_places=["Slottet", "Stortinget", "Nationaltheatret", "Oslo Domkirke", "Karl Johan"],
        historical_context="",
        cultural_context="Capital city",
        local_terminology=["gate", "torg", "brygge", "kirke"],
        region=RegionInfo(municipality="Oslo", county="Oslo", country="Norway"),
    )


@pytest.fixture
def plain_enrichment():
    """Enrichment outside the popular counties with two landmarks (score 1.4)."""
    return Enrichment(
        address="Storgata 5, Hamar",
        nearby_places=["Domkirkeodden", "Mjøsa"],
        historical_context="Short note",
        region=RegionInfo(municipality="Hamar", county="Innlandet", country="Norway"),
    )
