"""Tests for configuration loading."""

from pathlib import Path

from tickercache.utils.config import (
    APIConfig,
    BatchConfig,
    Config,
    StoreConfig,
    get_config,
    reset_config,
)


class TestDefaults:
    """Tests for dataclass defaults."""

    def test_batch_defaults(self):
        """Test the default batch settings."""
        batch = BatchConfig()
        assert batch.chunk_size == 5
        assert batch.wall_clock_budget == 240.0
        assert batch.chunk_delay == 1.0
        assert batch.max_workers == 4
        assert batch.chunk_retries == 0
        assert batch.job_ttl_hours == 24

    def test_api_defaults(self):
        """Test the default upstream settings."""
        api = APIConfig()
        assert api.eodhd_api_token is None
        assert api.eodhd_base_url == "https://eodhd.com/api"
        assert api.request_timeout == 8.0

    def test_store_paths(self, tmp_path):
        """Test db_path and logs_dir derive from data_dir unless overridden."""
        store = StoreConfig(data_dir=tmp_path)
        assert store.db_path == tmp_path / "tickercache.duckdb"
        assert store.logs_dir == tmp_path / "logs"

        store.db_path_override = tmp_path / "other.duckdb"
        assert store.db_path == tmp_path / "other.duckdb"


class TestFromEnv:
    """Tests for Config.from_env()."""

    def test_reads_environment(self, monkeypatch, tmp_path):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("TICKERCACHE_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EODHD_API_TOKEN", "secret")
        monkeypatch.setenv("TICKERCACHE_CHUNK_SIZE", "10")
        monkeypatch.setenv("TICKERCACHE_BUDGET_SECONDS", "60")
        monkeypatch.setenv("TICKERCACHE_CHUNK_RETRIES", "2")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        config = Config.from_env()

        assert config.store.data_dir == tmp_path
        assert config.api.eodhd_api_token == "secret"
        assert config.batch.chunk_size == 10
        assert config.batch.wall_clock_budget == 60.0
        assert config.batch.chunk_retries == 2
        assert config.log_level == "DEBUG"

    def test_db_path_override(self, monkeypatch, tmp_path):
        """Test that TICKERCACHE_DB_PATH wins over data_dir."""
        monkeypatch.setenv("TICKERCACHE_DB_PATH", str(tmp_path / "x.duckdb"))
        assert Config.from_env().store.db_path == Path(tmp_path / "x.duckdb")


class TestGlobalConfig:
    """Tests for get_config() and reset_config()."""

    def test_cached_until_reset(self, monkeypatch):
        """Test that the global instance is reused until reset."""
        first = get_config()
        assert get_config() is first

        monkeypatch.setenv("TICKERCACHE_CHUNK_SIZE", "7")
        assert get_config().batch.chunk_size == first.batch.chunk_size

        reset_config()
        assert get_config().batch.chunk_size == 7
