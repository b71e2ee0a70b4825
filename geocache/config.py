"""
Configuration for the Geospatial Story Cache.

Provides dataclasses for the cache engine settings and the popularity
heuristic, plus loaders for YAML files and environment overrides.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "GEOCACHE_"


@dataclass
class PopularityWeights:
    """
    Weights of the insert-time popularity heuristic.

    The constants are heuristic; only the shape matters (closer and more
    popular entries win).

    Attributes:
        base: Starting score for every entry
        per_nearby_place: Added per nearby landmark
        history_bonus: Added when the historical context is long enough
        history_min_length: Length the historical context must exceed
        popular_region_bonus: Added when the region is on the allow-list
        max_score: Upper bound of the initial score
        access_increment: Added on every read of the entry
    """

    base: float = 1.0
    per_nearby_place: float = 0.2
    history_bonus: float = 0.5
    history_min_length: int = 50
    popular_region_bonus: float = 1.0
    max_score: float = 10.0
    access_increment: float = 0.1

    def __post_init__(self):
        """Validate weights."""
        if self.max_score < self.base:
            raise ValueError(
                f"max_score must be >= base, got {self.max_score} < {self.base}"
            )
        if self.access_increment < 0:
            raise ValueError(
                f"access_increment must be >= 0, got {self.access_increment}"
            )


@dataclass
class CacheConfig:
    """
    Configuration for the cache engine.

    Attributes:
        cell_size_degrees: Edge length of a region cell (0.01 deg ~ 1 km)
        max_entries_per_region: Per-cell cap enforced on insert
        default_ttl_hours: Lifetime of entries inserted without a TTL
        cleanup_interval_hours: Interval of the background expiry sweep
        stats_sample_size: Entries sampled for size/age estimates
        sweep_batch_size: Entries removed per lock hold during a sweep
        lock_timeout_seconds: Upper bound on waiting for the cache lock
        default_radius_meters: Radius used by read-through lookups
        popular_regions: Region names that earn the popularity bonus
        popularity: Popularity heuristic weights
        prune_empty_regions: Drop empty cells during sweeps
        snapshot_path: SQLite snapshot file (None = no persistence)
        write_behind_interval_seconds: Flush interval of the write-behind queue
    """

    cell_size_degrees: float = 0.01
    max_entries_per_region: int = 100
    default_ttl_hours: float = 168.0  # 7 days
    cleanup_interval_hours: float = 24.0
    stats_sample_size: int = 50
    sweep_batch_size: int = 200
    lock_timeout_seconds: float = 5.0
    default_radius_meters: float = 1000.0
    popular_regions: List[str] = field(
        default_factory=lambda: ["Oslo", "Vestland", "Trøndelag"]
    )
    popularity: PopularityWeights = field(default_factory=PopularityWeights)
    prune_empty_regions: bool = True
    snapshot_path: Optional[str] = None
    write_behind_interval_seconds: float = 5.0

    def __post_init__(self):
        """Validate configuration."""
        if not 0 < self.cell_size_degrees <= 90:
            raise ValueError(
                f"cell_size_degrees must be in (0, 90], got {self.cell_size_degrees}"
            )
        if self.max_entries_per_region < 1:
            raise ValueError(
                f"max_entries_per_region must be >= 1, got {self.max_entries_per_region}"
            )
        if self.default_ttl_hours <= 0:
            raise ValueError(
                f"default_ttl_hours must be > 0, got {self.default_ttl_hours}"
            )
        if self.cleanup_interval_hours <= 0:
            raise ValueError(
                f"cleanup_interval_hours must be > 0, got {self.cleanup_interval_hours}"
            )
        if self.stats_sample_size < 1:
            raise ValueError(
                f"stats_sample_size must be >= 1, got {self.stats_sample_size}"
            )
        if self.sweep_batch_size < 1:
            raise ValueError(
                f"sweep_batch_size must be >= 1, got {self.sweep_batch_size}"
            )
        if self.lock_timeout_seconds <= 0:
            raise ValueError(
                f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}"
            )
        if self.default_radius_meters <= 0:
            raise ValueError(
                f"default_radius_meters must be > 0, got {self.default_radius_meters}"
            )

    @property
    def cleanup_interval_seconds(self) -> float:
        return self.cleanup_interval_hours * 3600

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "CacheConfig":
        """
        Create configuration from dictionary.

        Args:
            config_dict: Configuration dictionary (unknown keys are ignored)

        Returns:
            CacheConfig instance
        """
        data = dict(config_dict or {})
        popularity = PopularityWeights(**data.pop("popularity", {}) or {})

        known = {
            name for name in cls.__dataclass_fields__ if name != "popularity"
        }
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown cache config keys: {sorted(unknown)}")

        return cls(
            popularity=popularity,
            **{k: v for k, v in data.items() if k in known},
        )

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "CacheConfig":
        """
        Load configuration from YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            CacheConfig instance
        """
        path = Path(yaml_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(path, "r") as f:
            config_dict = yaml.safe_load(f) or {}

        # Extract cache section if present
        if "geocache" in config_dict:
            config_dict = config_dict["geocache"] or {}

        return cls.from_dict(config_dict)

    @classmethod
    def from_environment(cls) -> "CacheConfig":
        """
        Create configuration from environment variables.

        Environment variables override default values:
        - GEOCACHE_CELL_SIZE_DEGREES
        - GEOCACHE_MAX_ENTRIES_PER_REGION
        - GEOCACHE_DEFAULT_TTL_HOURS
        - GEOCACHE_CLEANUP_INTERVAL_HOURS
        - GEOCACHE_STATS_SAMPLE_SIZE
        - GEOCACHE_SNAPSHOT_PATH

        Returns:
            CacheConfig instance
        """
        config = cls()
        _apply_environment(config)
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "cell_size_degrees": self.cell_size_degrees,
            "max_entries_per_region": self.max_entries_per_region,
            "default_ttl_hours": self.default_ttl_hours,
            "cleanup_interval_hours": self.cleanup_interval_hours,
            "stats_sample_size": self.stats_sample_size,
            "sweep_batch_size": self.sweep_batch_size,
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "default_radius_meters": self.default_radius_meters,
            "popular_regions": list(self.popular_regions),
            "popularity": {
                "base": self.popularity.base,
                "per_nearby_place": self.popularity.per_nearby_place,
                "history_bonus": self.popularity.history_bonus,
                "history_min_length": self.popularity.history_min_length,
                "popular_region_bonus": self.popularity.popular_region_bonus,
                "max_score": self.popularity.max_score,
                "access_increment": self.popularity.access_increment,
            },
            "prune_empty_regions": self.prune_empty_regions,
            "snapshot_path": self.snapshot_path,
            "write_behind_interval_seconds": self.write_behind_interval_seconds,
        }


_ENV_FIELDS = {
    "CELL_SIZE_DEGREES": ("cell_size_degrees", float),
    "MAX_ENTRIES_PER_REGION": ("max_entries_per_region", int),
    "DEFAULT_TTL_HOURS": ("default_ttl_hours", float),
    "CLEANUP_INTERVAL_HOURS": ("cleanup_interval_hours", float),
    "STATS_SAMPLE_SIZE": ("stats_sample_size", int),
    "SNAPSHOT_PATH": ("snapshot_path", str),
}


def _apply_environment(config: CacheConfig) -> None:
    """Apply GEOCACHE_* overrides in place, skipping unparsable values."""
    for suffix, (attr, cast) in _ENV_FIELDS.items():
        raw = os.environ.get(ENV_PREFIX + suffix)
        if not raw:
            continue
        try:
            setattr(config, attr, cast(raw))
        except ValueError:
            logger.warning(f"Ignoring invalid {ENV_PREFIX}{suffix}={raw!r}")
    # Re-run validation on the overridden values
    config.__post_init__()


DEFAULT_CONFIG_PATHS = [
    Path("config/geocache.yaml"),
    Path("~/.geocache/config.yaml").expanduser(),
    Path("/etc/geocache/config.yaml"),
]


def load_config(
    yaml_path: Optional[str] = None,
    use_environment: bool = True,
) -> CacheConfig:
    """
    Load cache configuration with fallbacks.

    Attempts to load configuration in order:
    1. From specified YAML path (if provided)
    2. From default config paths
    3. Fall back to defaults

    Environment overrides are applied on top when use_environment is set.

    Args:
        yaml_path: Optional explicit path to YAML config
        use_environment: Whether to apply environment variable overrides

    Returns:
        CacheConfig instance
    """
    config = None

    if yaml_path:
        try:
            config = CacheConfig.from_yaml(yaml_path)
        except FileNotFoundError:
            logger.warning(f"Cache config not found at {yaml_path}, using defaults")

    if config is None:
        for path in DEFAULT_CONFIG_PATHS:
            if path.exists():
                try:
                    config = CacheConfig.from_yaml(str(path))
                    break
                except (yaml.YAMLError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable cache config {path}: {e}")
                    continue

    if config is None:
        config = CacheConfig()

    if use_environment:
        _apply_environment(config)

    return config
