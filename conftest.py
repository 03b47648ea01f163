"""
Pytest configuration and fixtures for resumable crawler tests.
"""

import os
import shutil
import tempfile
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from hypothesis import settings, Verbosity

from resumable_crawler.concurrent.models import EngineConfig, WorkItem
from resumable_crawler.crawlers.base import Discovery, ItemProcessor, RecordWriter
from resumable_crawler.utils.errors import ContentParseError, OutputError

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=5, deadline=5000, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=30000, verbosity=Verbosity.normal)

# Use fast profile by default
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "fast"))


class ScriptedDiscovery(Discovery):
    """Serves fixed key listings page by page; failures can be queued per (partition, cursor)."""

    def __init__(self, listings: Dict[str, List[str]], page_size: int = 2,
                 limit_key: str = "listing.example"):
        self.listings = listings
        self.page_size = page_size
        self.limit_key = limit_key
        self.failures: Dict[tuple, List[Exception]] = defaultdict(list)
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def fail(self, partition: str, cursor: int, *errors: Exception) -> None:
        self.failures[(partition, cursor)].extend(errors)

    def list_items(self, partition: str, cursor: int) -> List[str]:
        with self._lock:
            self.calls.append((partition, cursor))
            pending = self.failures.get((partition, cursor))
            if pending:
                raise pending.pop(0)
        keys = self.listings.get(partition, [])
        return keys[cursor:cursor + self.page_size]

    def rate_limit_key(self, partition: str) -> str:
        return self.limit_key


class RecordingProcessor(ItemProcessor):
    """Turns every item into a small record, failing for configured keys."""

    def __init__(self, fail_keys=(), empty_keys=(), limit_key: str = "items.example",
                 gate: Optional[threading.Barrier] = None):
        self.fail_keys = set(fail_keys)
        self.empty_keys = set(empty_keys)
        self.limit_key = limit_key
        self.gate = gate
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def process(self, item: WorkItem):
        with self._lock:
            self.calls.append(item.item_key)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if item.item_key in self.fail_keys:
            raise ContentParseError(f"cannot parse {item.item_key}")
        if item.item_key in self.empty_keys:
            return None
        return {"key": item.item_key, "partition": item.partition}

    def rate_limit_key(self, item: WorkItem) -> str:
        return self.limit_key


class MemoryWriter(RecordWriter):
    """Keeps written records in memory."""

    def __init__(self, fail_keys=()):
        self.fail_keys = set(fail_keys)
        self.records: List[tuple] = []
        self.closed = False
        self.close_calls = 0
        self._lock = threading.Lock()

    def write(self, partition, record):
        if record["key"] in self.fail_keys:
            raise OutputError(f"disk full writing {record['key']}")
        with self._lock:
            self.records.append((partition, record))

    def close(self):
        self.close_calls += 1
        self.closed = True

    def keys(self) -> List[str]:
        with self._lock:
            return [record["key"] for _, record in self.records]


@pytest.fixture(scope="function")
def temp_dir():
    """Create a temporary directory for a single test."""
    path = tempfile.mkdtemp(prefix="resumable_crawler_test_")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def state_dir(temp_dir):
    """Directory for state files."""
    return str(temp_dir / "crawl_state")


@pytest.fixture
def make_engine_config():
    """Factory for engine configurations with test-friendly timings."""
    def factory(**overrides) -> EngineConfig:
        values = dict(
            worker_count=2,
            queue_capacity=100,
            page_size=2,
            default_interval_ms=0,
            max_interval_ms=1000,
            poll_timeout=0.05,
            backpressure_delay=0.01,
            retry_attempts=3,
            retry_delay=0.01,
            max_retry_delay=0.05,
            completion_check_interval=0.02,
            status_log_interval=0.5,
            shutdown_timeout=5.0,
        )
        values.update(overrides)
        return EngineConfig(**values)
    return factory


@pytest.fixture
def discovery_factory():
    return ScriptedDiscovery


@pytest.fixture
def processor_factory():
    return RecordingProcessor


@pytest.fixture
def writer_factory():
    return MemoryWriter


def pytest_configure(config):
    """Configure pytest with custom settings."""
    import logging
    logging.getLogger("resumable_crawler").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Add markers and skip slow tests unless requested."""
    skip_slow = pytest.mark.skip(reason="needs --run-slow option to run")
    for item in items:
        if getattr(getattr(item, "obj", None), "is_hypothesis_test", False):
            item.add_marker(pytest.mark.property)

        if "integration" in item.name.lower():
            item.add_marker(pytest.mark.integration)

        if "slow" in item.keywords and not config.getoption("--run-slow"):
            item.add_marker(skip_slow)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )
