"""
Configuration management for the resumable crawler.
"""

import os
import threading
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
from pathlib import Path
import json
import logging

import jsonschema
from jsonschema import validate

from resumable_crawler.concurrent.models import EngineConfig
from resumable_crawler.utils.errors import ConfigurationError, ValidationError


@dataclass
class CrawlerConfig:
    """Remote source settings."""
    search_url_template: str = (
        "https://issues.apache.org/jira/issues/?jql=project%3D{partition}&startIndex={cursor}"
    )
    item_url_template: str = "https://issues.apache.org/jira/browse/{key}"
    key_pattern: str = r"/browse/([A-Z][A-Z0-9_]*-\d+)"
    page_size: int = 50
    request_timeout: int = 30
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0


@dataclass
class ConcurrencyConfig:
    """Worker pool and queue settings."""
    worker_count: int = 4
    queue_capacity: int = 1000
    poll_timeout: float = 5.0
    backpressure_delay: float = 5.0
    completion_check_interval: float = 1.0
    status_log_interval: float = 30.0
    shutdown_timeout: float = 30.0


@dataclass
class RateLimitConfig:
    """Per-domain politeness settings."""
    default_interval_ms: int = 2000
    max_interval_ms: int = 60000
    idle_timeout: float = 600.0
    sweep_interval: float = 300.0


@dataclass
class StorageConfig:
    """Where state and output live."""
    state_dir: str = "crawl_state"
    output_dir: str = "output"


@dataclass
class SystemConfig:
    """Main system configuration."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    partitions: List[str] = field(default_factory=lambda: ["ACE", "SPARK", "HADOOP"])
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def to_engine_config(self) -> EngineConfig:
        """
        Build the engine configuration.

        Raises:
            ValidationError: If the combined values are out of range
        """
        return EngineConfig(
            worker_count=self.concurrency.worker_count,
            queue_capacity=self.concurrency.queue_capacity,
            page_size=self.crawler.page_size,
            default_interval_ms=self.rate_limit.default_interval_ms,
            max_interval_ms=self.rate_limit.max_interval_ms,
            tracker_idle_timeout=self.rate_limit.idle_timeout,
            sweep_interval=self.rate_limit.sweep_interval,
            poll_timeout=self.concurrency.poll_timeout,
            backpressure_delay=self.concurrency.backpressure_delay,
            retry_attempts=self.crawler.retry_attempts,
            retry_delay=self.crawler.retry_delay,
            max_retry_delay=self.crawler.max_retry_delay,
            completion_check_interval=self.concurrency.completion_check_interval,
            status_log_interval=self.concurrency.status_log_interval,
            shutdown_timeout=self.concurrency.shutdown_timeout,
        )


# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "crawler": {
            "type": "object",
            "properties": {
                "search_url_template": {"type": "string", "pattern": "\\{cursor\\}"},
                "item_url_template": {"type": "string", "pattern": "\\{key\\}"},
                "key_pattern": {"type": "string", "minLength": 1},
                "page_size": {"type": "integer", "minimum": 1, "maximum": 1000},
                "request_timeout": {"type": "integer", "minimum": 1, "maximum": 300},
                "retry_attempts": {"type": "integer", "minimum": 1, "maximum": 10},
                "retry_delay": {"type": "number", "minimum": 0.0, "maximum": 60.0},
                "max_retry_delay": {"type": "number", "minimum": 0.0, "maximum": 600.0}
            },
            "additionalProperties": False
        },
        "concurrency": {
            "type": "object",
            "properties": {
                "worker_count": {"type": "integer", "minimum": 1, "maximum": 64},
                "queue_capacity": {"type": "integer", "minimum": 1, "maximum": 1000000},
                "poll_timeout": {"type": "number", "exclusiveMinimum": 0, "maximum": 60.0},
                "backpressure_delay": {"type": "number", "exclusiveMinimum": 0, "maximum": 300.0},
                "completion_check_interval": {"type": "number", "exclusiveMinimum": 0},
                "status_log_interval": {"type": "number", "exclusiveMinimum": 0},
                "shutdown_timeout": {"type": "number", "exclusiveMinimum": 0}
            },
            "additionalProperties": False
        },
        "rate_limit": {
            "type": "object",
            "properties": {
                "default_interval_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "max_interval_ms": {"type": "integer", "minimum": 0, "maximum": 3600000},
                "idle_timeout": {"type": "number", "exclusiveMinimum": 0},
                "sweep_interval": {"type": "number", "exclusiveMinimum": 0}
            },
            "additionalProperties": False
        },
        "storage": {
            "type": "object",
            "properties": {
                "state_dir": {"type": "string", "minLength": 1},
                "output_dir": {"type": "string", "minLength": 1}
            },
            "additionalProperties": False
        },
        "partitions": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 1
        },
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        },
        "log_file": {"type": ["string", "null"]}
    },
    "additionalProperties": False
}


# Environment variables overriding file or default values
ENV_OVERRIDES = {
    "CRAWLER_WORKERS": ("concurrency", "worker_count", int),
    "CRAWLER_QUEUE_CAPACITY": ("concurrency", "queue_capacity", int),
    "CRAWLER_DELAY_MS": ("rate_limit", "default_interval_ms", int),
    "CRAWLER_STATE_DIR": ("storage", "state_dir", str),
    "CRAWLER_OUTPUT_DIR": ("storage", "output_dir", str),
}


class ConfigManager:
    """Loads, validates and saves the crawler configuration."""

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self._config: Optional[SystemConfig] = None
        self._lock = threading.RLock()

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"path": "/".join(str(p) for p in e.absolute_path)}
            )

    def load_config(self) -> SystemConfig:
        """
        Load configuration from the JSON file if present, else defaults,
        then apply environment overrides.

        Raises:
            ConfigurationError: If the file or an override is invalid
        """
        with self._lock:
            self._load_env_file()

            if self.config_path.exists():
                config = self._load_from_file()
            else:
                config = SystemConfig()
                logging.info("No configuration file found, using defaults")

            self._apply_env_overrides(config)
            self._config = config
            return config

    def _load_from_file(self) -> SystemConfig:
        """Load configuration from JSON file with validation."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read configuration {self.config_path}: {e}")

        self.validate_config(config_data)
        config = self._dict_to_config(config_data)
        logging.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def _load_env_file(self) -> None:
        """Load KEY=VALUE lines from a local .env file into the environment."""
        env_file = Path('.env')
        if not env_file.exists():
            return
        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        os.environ.setdefault(key.strip(), value.strip())
            logging.info("Loaded environment variables from .env file")
        except OSError as e:
            logging.warning(f"Failed to load .env file: {e}")

    def _apply_env_overrides(self, config: SystemConfig) -> None:
        """Override configuration with environment variables."""
        for env_name, (section, attr, cast) in ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if not raw:
                continue
            try:
                setattr(getattr(config, section), attr, cast(raw))
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value for {env_name}: {raw!r}",
                    {"variable": env_name}
                )

        partitions = os.getenv("CRAWLER_PARTITIONS")
        if partitions:
            config.partitions = [p.strip() for p in partitions.split(',') if p.strip()]

        log_level = os.getenv("CRAWLER_LOG_LEVEL")
        if log_level:
            if log_level.upper() not in CONFIG_SCHEMA["properties"]["log_level"]["enum"]:
                raise ConfigurationError(
                    f"Invalid value for CRAWLER_LOG_LEVEL: {log_level!r}",
                    {"variable": "CRAWLER_LOG_LEVEL"}
                )
            config.log_level = log_level.upper()

    def _dict_to_config(self, data: Dict[str, Any]) -> SystemConfig:
        """Convert dictionary to SystemConfig object."""
        config = SystemConfig()

        if "crawler" in data:
            config.crawler = CrawlerConfig(**data["crawler"])

        if "concurrency" in data:
            config.concurrency = ConcurrencyConfig(**data["concurrency"])

        if "rate_limit" in data:
            config.rate_limit = RateLimitConfig(**data["rate_limit"])

        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])

        config.partitions = list(data.get("partitions", config.partitions))
        config.log_level = data.get("log_level", config.log_level)
        config.log_file = data.get("log_file", config.log_file)

        return config

    def get_engine_config(self) -> EngineConfig:
        """
        Engine configuration derived from the loaded settings.

        Raises:
            ConfigurationError: If the settings do not form a valid engine configuration
        """
        config = self._config or self.load_config()
        try:
            return config.to_engine_config()
        except ValidationError as e:
            raise ConfigurationError(str(e), e.details)

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as dictionary."""
        with self._lock:
            if not self._config:
                return {}

            return {
                "crawler": asdict(self._config.crawler),
                "concurrency": asdict(self._config.concurrency),
                "rate_limit": asdict(self._config.rate_limit),
                "storage": asdict(self._config.storage),
                "partitions": list(self._config.partitions),
                "log_level": self._config.log_level,
                "log_file": self._config.log_file
            }

    def save_config(self, config_path: Optional[str] = None) -> None:
        """Save current configuration to file."""
        with self._lock:
            if not self._config:
                raise ConfigurationError("No configuration loaded to save")

            save_path = Path(config_path) if config_path else self.config_path
            config_dict = self.export_config()

            # Validate before saving
            self.validate_config(config_dict)

            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logging.info(f"Configuration saved to {save_path}")
