"""
Tests for cache configuration loading.
"""

import pytest
import yaml

from geocache.config import CacheConfig, PopularityWeights, load_config


class TestCacheConfig:
    """Tests for CacheConfig."""

    def test_defaults(self):
        """Test default values."""
        config = CacheConfig()

        assert config.cell_size_degrees == 0.01
        assert config.max_entries_per_region == 100
        assert config.default_ttl_hours == 168
        assert config.cleanup_interval_hours == 24
        assert config.cleanup_interval_seconds == 24 * 3600
        assert config.stats_sample_size == 50
        assert config.popular_regions == ["Oslo", "Vestland", "Trøndelag"]
        assert config.popularity.max_score == 10.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"cell_size_degrees": 0},
            {"max_entries_per_region": 0},
            {"default_ttl_hours": -1},
            {"cleanup_interval_hours": 0},
            {"stats_sample_size": 0},
            {"sweep_batch_size": 0},
            {"lock_timeout_seconds": 0},
            {"default_radius_meters": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        """Test validation rejects out-of-range values."""
        with pytest.raises(ValueError):
            CacheConfig(**kwargs)

    def test_invalid_weights(self):
        """Test popularity weight validation."""
        with pytest.raises(ValueError):
            PopularityWeights(base=5.0, max_score=1.0)

    def test_dict_round_trip(self):
        """Test to_dict/from_dict."""
        config = CacheConfig(
            max_entries_per_region=7,
            popularity=PopularityWeights(per_nearby_place=0.3),
        )

        restored = CacheConfig.from_dict(config.to_dict())

        assert restored == config

    def test_from_dict_ignores_unknown_keys(self):
        """Test unknown keys are skipped."""
        config = CacheConfig.from_dict({"default_ttl_hours": 12, "colour": "blue"})

        assert config.default_ttl_hours == 12


class TestYamlConfig:
    """Tests for YAML loading."""

    def test_from_yaml_section(self, tmp_path):
        """Test loading the geocache section of a YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "geocache": {
                "max_entries_per_region": 20,
                "popular_regions": ["Oslo"],
                "popularity": {"history_bonus": 0.75},
            },
            "other_service": {"port": 8080},
        }))

        config = CacheConfig.from_yaml(str(path))

        assert config.max_entries_per_region == 20
        assert config.popular_regions == ["Oslo"]
        assert config.popularity.history_bonus == 0.75
        assert config.popularity.base == 1.0

    def test_from_yaml_top_level(self, tmp_path):
        """Test a file holding only cache settings."""
        path = tmp_path / "config.yaml"
        path.write_text("default_ttl_hours: 48\n")

        assert CacheConfig.from_yaml(str(path)).default_ttl_hours == 48

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            CacheConfig.from_yaml(str(tmp_path / "missing.yaml"))


class TestLoadConfig:
    """Tests for load_config."""

    def test_falls_back_to_defaults(self, tmp_path, monkeypatch):
        """Test defaults apply when no file is found."""
        monkeypatch.chdir(tmp_path)

        config = load_config(str(tmp_path / "missing.yaml"), use_environment=False)

        assert config == CacheConfig()

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test GEOCACHE_* variables override file values."""
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "config.yaml"
        path.write_text("max_entries_per_region: 20\ndefault_ttl_hours: 48\n")
        monkeypatch.setenv("GEOCACHE_MAX_ENTRIES_PER_REGION", "5")
        monkeypatch.setenv("GEOCACHE_SNAPSHOT_PATH", str(tmp_path / "snap.db"))

        config = load_config(str(path))

        assert config.max_entries_per_region == 5
        assert config.default_ttl_hours == 48
        assert config.snapshot_path == str(tmp_path / "snap.db")

    def test_invalid_environment_value_ignored(self, monkeypatch):
        """Test unparsable variables are skipped."""
        monkeypatch.setenv("GEOCACHE_DEFAULT_TTL_HOURS", "a week")

        assert CacheConfig.from_environment().default_ttl_hours == 168

    def test_out_of_range_environment_value(self, monkeypatch):
        """Test parsed variables are still validated."""
        monkeypatch.setenv("GEOCACHE_CELL_SIZE_DEGREES", "-1")

        with pytest.raises(ValueError):
            CacheConfig.from_environment()

    def test_default_search_path(self, tmp_path, monkeypatch):
        """Test config/geocache.yaml in the working directory is found."""
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "geocache.yaml").write_text(
            "geocache:\n  stats_sample_size: 10\n"
        )

        assert load_config(use_environment=False).stats_sample_size == 10
