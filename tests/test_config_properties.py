"""
Property-based tests for configuration loading.
"""

import json
import os

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from config import ConfigManager, SystemConfig, ENV_OVERRIDES
from resumable_crawler.concurrent.models import EngineConfig
from resumable_crawler.utils.errors import ConfigurationError


ENV_NAMES = list(ENV_OVERRIDES) + ["CRAWLER_PARTITIONS", "CRAWLER_LOG_LEVEL"]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, temp_dir):
    """Isolate tests from the caller's environment and any local .env file."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(temp_dir)


@st.composite
def system_config_strategy(draw):
    """Generate valid configuration documents."""
    partition = st.text(min_size=1, max_size=10,
                        alphabet=st.characters(whitelist_categories=("Lu", "Nd")))
    default_interval = draw(st.integers(min_value=0, max_value=10000))
    retry_delay = draw(st.floats(min_value=0.0, max_value=10.0))
    return {
        "crawler": {
            "page_size": draw(st.integers(min_value=1, max_value=1000)),
            "request_timeout": draw(st.integers(min_value=1, max_value=300)),
            "retry_attempts": draw(st.integers(min_value=1, max_value=10)),
            "retry_delay": retry_delay,
            "max_retry_delay": retry_delay + draw(st.floats(min_value=0.0, max_value=60.0)),
        },
        "concurrency": {
            "worker_count": draw(st.integers(min_value=1, max_value=64)),
            "queue_capacity": draw(st.integers(min_value=1, max_value=100000)),
        },
        "rate_limit": {
            "default_interval_ms": default_interval,
            "max_interval_ms": default_interval + draw(st.integers(min_value=0, max_value=60000)),
        },
        "partitions": draw(st.lists(partition, min_size=1, max_size=5)),
        "log_level": draw(st.sampled_from(["DEBUG", "INFO", "WARNING", "ERROR"])),
    }


def write_config(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestConfigLoading:
    """Loading configuration from defaults and files."""

    def test_defaults_without_file(self, temp_dir):
        config = ConfigManager(str(temp_dir / "missing.json")).load_config()

        assert config == SystemConfig()
        assert config.partitions == ["ACE", "SPARK", "HADOOP"]
        assert config.concurrency.worker_count == 4
        assert config.rate_limit.default_interval_ms == 2000

    @given(data=system_config_strategy())
    @settings(max_examples=20, deadline=5000,
              suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_valid_documents_load_consistently(self, tmp_path_factory, data):
        path = write_config(tmp_path_factory.mktemp("cfg") / "config.json", data)

        first = ConfigManager(path).load_config()
        second = ConfigManager(path).load_config()

        assert first == second
        assert first.crawler.page_size == data["crawler"]["page_size"]
        assert first.concurrency.worker_count == data["concurrency"]["worker_count"]
        assert first.partitions == data["partitions"]

        engine = ConfigManager(path).get_engine_config()
        assert isinstance(engine, EngineConfig)
        assert engine.page_size == data["crawler"]["page_size"]
        assert engine.default_interval_ms == data["rate_limit"]["default_interval_ms"]

    def test_partial_sections_keep_defaults(self, temp_dir):
        path = write_config(temp_dir / "config.json", {"storage": {"state_dir": "elsewhere"}})

        config = ConfigManager(path).load_config()

        assert config.storage.state_dir == "elsewhere"
        assert config.storage.output_dir == "output"
        assert config.crawler.page_size == 50


class TestConfigValidation:
    """Schema and engine-level validation."""

    @pytest.mark.parametrize("document", [
        {"unknown": 1},
        {"crawler": {"page_size": 0}},
        {"crawler": {"search_url_template": "https://example.org/no-cursor"}},
        {"concurrency": {"worker_count": 65}},
        {"concurrency": {"worker_count": "four"}},
        {"rate_limit": {"default_interval_ms": -1}},
        {"partitions": []},
        {"log_level": "LOUD"},
    ])
    def test_invalid_documents_are_rejected(self, temp_dir, document):
        path = write_config(temp_dir / "config.json", document)

        with pytest.raises(ConfigurationError):
            ConfigManager(path).load_config()

    def test_unreadable_json_is_rejected(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(path)).load_config()

    def test_inconsistent_engine_values_are_rejected(self, temp_dir):
        path = write_config(temp_dir / "config.json", {
            "rate_limit": {"default_interval_ms": 5000, "max_interval_ms": 1000}
        })
        manager = ConfigManager(path)
        manager.load_config()

        with pytest.raises(ConfigurationError):
            manager.get_engine_config()


class TestEnvironmentOverrides:
    """Environment variables win over file values."""

    def test_overrides_apply(self, temp_dir, monkeypatch):
        path = write_config(temp_dir / "config.json", {"concurrency": {"worker_count": 2}})
        monkeypatch.setenv("CRAWLER_WORKERS", "8")
        monkeypatch.setenv("CRAWLER_DELAY_MS", "250")
        monkeypatch.setenv("CRAWLER_STATE_DIR", "/tmp/state")
        monkeypatch.setenv("CRAWLER_PARTITIONS", "KAFKA, HIVE,")
        monkeypatch.setenv("CRAWLER_LOG_LEVEL", "debug")

        config = ConfigManager(path).load_config()

        assert config.concurrency.worker_count == 8
        assert config.rate_limit.default_interval_ms == 250
        assert config.storage.state_dir == "/tmp/state"
        assert config.partitions == ["KAFKA", "HIVE"]
        assert config.log_level == "DEBUG"

    def test_bad_integer_is_rejected(self, temp_dir, monkeypatch):
        monkeypatch.setenv("CRAWLER_WORKERS", "many")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(temp_dir / "missing.json")).load_config()

    def test_bad_log_level_is_rejected(self, temp_dir, monkeypatch):
        monkeypatch.setenv("CRAWLER_LOG_LEVEL", "chatty")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(temp_dir / "missing.json")).load_config()

    def test_env_file_is_read(self, temp_dir):
        (temp_dir / ".env").write_text("# local settings\nCRAWLER_QUEUE_CAPACITY=42\n")

        try:
            config = ConfigManager(str(temp_dir / "missing.json")).load_config()
        finally:
            os.environ.pop("CRAWLER_QUEUE_CAPACITY", None)

        assert config.concurrency.queue_capacity == 42


class TestConfigPersistence:

    def test_save_and_reload(self, temp_dir):
        manager = ConfigManager(str(temp_dir / "missing.json"))
        config = manager.load_config()
        config.partitions = ["ZOOKEEPER"]
        config.crawler.page_size = 25

        target = temp_dir / "saved.json"
        manager.save_config(str(target))
        reloaded = ConfigManager(str(target)).load_config()

        assert reloaded.partitions == ["ZOOKEEPER"]
        assert reloaded.crawler.page_size == 25
        assert reloaded == config

    def test_save_without_load_fails(self, temp_dir):
        with pytest.raises(ConfigurationError):
            ConfigManager(str(temp_dir / "config.json")).save_config()

    def test_export_before_load_is_empty(self, temp_dir):
        assert ConfigManager(str(temp_dir / "config.json")).export_config() == {}
