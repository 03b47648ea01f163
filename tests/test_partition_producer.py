"""
Tests for partition producers: pagination, resume, backpressure and retries.
"""

import time

import pytest

from resumable_crawler.concurrent.models import ProducerState
from resumable_crawler.concurrent.producer import PartitionProducer
from resumable_crawler.concurrent.rate_controller import DomainRateLimiter
from resumable_crawler.concurrent.work_queue import WorkQueue
from resumable_crawler.services.state_manager import StateStore
from resumable_crawler.utils.errors import (
    CrawlerError, RateLimitedError, StateManagementError, TransientFetchError
)


def drain(queue):
    keys = []
    while True:
        item = queue.dequeue_nowait()
        if item is None:
            return keys
        keys.append(item.item_key)


@pytest.fixture
def engine(state_dir):
    """Queue, state store and rate limiter shared by a producer under test."""
    queue = WorkQueue(capacity=100)
    queue.start()
    limiter = DomainRateLimiter(default_interval_ms=0, max_interval_ms=1000)
    store = StateStore(state_dir)
    yield queue, store, limiter
    queue.stop()
    limiter.shutdown()


def run_producer(partition, discovery, engine, config, timeout=5.0):
    queue, store, limiter = engine
    producer = PartitionProducer(partition, discovery, queue, store, limiter, config)
    producer.start()
    producer.join(timeout=timeout)
    assert producer.is_finished()
    return producer


class TestPagination:
    """Paging through a partition and recognising its end."""

    def test_empty_page_exhausts(self, engine, discovery_factory, make_engine_config):
        discovery = discovery_factory({"P": ["P-1", "P-2"]}, page_size=2)
        producer = run_producer("P", discovery, engine, make_engine_config(page_size=2))

        queue, store, _ = engine
        assert producer.state is ProducerState.EXHAUSTED
        assert drain(queue) == ["P-1", "P-2"]
        assert store.get_cursor("P") == 2
        assert discovery.calls == [("P", 0), ("P", 2)]

    def test_short_page_exhausts_without_extra_request(self, engine, discovery_factory,
                                                       make_engine_config):
        discovery = discovery_factory({"P": ["P-1", "P-2", "P-3"]}, page_size=2)
        producer = run_producer("P", discovery, engine, make_engine_config(page_size=2))

        queue, store, _ = engine
        assert producer.state is ProducerState.EXHAUSTED
        assert drain(queue) == ["P-1", "P-2", "P-3"]
        assert store.get_cursor("P") == 3
        assert discovery.calls == [("P", 0), ("P", 2)]

    def test_unknown_partition_is_immediately_exhausted(self, engine, discovery_factory,
                                                        make_engine_config):
        discovery = discovery_factory({})
        producer = run_producer("EMPTY", discovery, engine, make_engine_config())

        assert producer.state is ProducerState.EXHAUSTED
        assert producer.pages_fetched == 1
        assert engine[1].get_cursor("EMPTY") == 0


class TestResume:
    """Restarting from stored progress."""

    def test_resumes_from_stored_cursor(self, engine, discovery_factory, make_engine_config):
        queue, store, _ = engine
        store.advance_cursor("P", 2)
        discovery = discovery_factory({"P": ["P-1", "P-2", "P-3", "P-4"]}, page_size=2)

        run_producer("P", discovery, engine, make_engine_config(page_size=2))

        assert discovery.calls[0] == ("P", 2)
        assert drain(queue) == ["P-3", "P-4"]
        assert store.get_cursor("P") == 4

    def test_processed_keys_are_not_enqueued(self, engine, discovery_factory, make_engine_config):
        queue, store, _ = engine
        store.try_commit("P", "P-1")
        discovery = discovery_factory({"P": ["P-1", "P-2"]}, page_size=2)

        producer = run_producer("P", discovery, engine, make_engine_config(page_size=2))

        assert drain(queue) == ["P-2"]
        assert producer.keys_skipped == 1
        assert producer.keys_enqueued == 1
        assert store.get_cursor("P") == 2


class TestBackpressure:
    """A full queue pauses the producer without losing keys."""

    def test_keys_wait_for_space_in_order(self, state_dir, discovery_factory, make_engine_config):
        queue = WorkQueue(capacity=1)
        queue.start()
        limiter = DomainRateLimiter(default_interval_ms=0)
        store = StateStore(state_dir)
        config = make_engine_config(page_size=3, backpressure_delay=0.01)
        discovery = discovery_factory({"P": ["P-1", "P-2", "P-3"]}, page_size=3)

        producer = PartitionProducer("P", discovery, queue, store, limiter, config)
        producer.start()
        try:
            received = []
            saw_draining = False
            deadline = time.monotonic() + 5.0
            while len(received) < 3 and time.monotonic() < deadline:
                if producer.state is ProducerState.DRAINING:
                    saw_draining = True
                assert queue.size() <= 1
                item = queue.dequeue(timeout=0.05)
                if item is not None:
                    received.append(item.item_key)
                    time.sleep(0.1)

            producer.join(timeout=5.0)
        finally:
            producer.stop()
            queue.stop()
            limiter.shutdown()

        assert received == ["P-1", "P-2", "P-3"]
        assert saw_draining
        assert producer.state is ProducerState.EXHAUSTED

    def test_stop_while_draining(self, state_dir, discovery_factory, make_engine_config):
        queue = WorkQueue(capacity=1)
        queue.start()
        limiter = DomainRateLimiter(default_interval_ms=0)
        store = StateStore(state_dir)
        discovery = discovery_factory({"P": ["P-1", "P-2"]}, page_size=2)

        producer = PartitionProducer("P", discovery, queue, store, limiter,
                                     make_engine_config(page_size=2, backpressure_delay=0.05))
        producer.start()
        deadline = time.monotonic() + 5.0
        while producer.state is not ProducerState.DRAINING and time.monotonic() < deadline:
            time.sleep(0.01)

        producer.stop()
        producer.join(timeout=5.0)
        queue.stop()
        limiter.shutdown()

        assert producer.state is ProducerState.STOPPED
        # The page was not fully enqueued, so the cursor stays put
        assert store.get_cursor("P") == 0


class TestListingFailures:
    """Transient and permanent listing errors."""

    def test_transient_error_is_retried(self, engine, discovery_factory, make_engine_config):
        discovery = discovery_factory({"P": ["P-1"]}, page_size=2)
        discovery.fail("P", 0, TransientFetchError("503"), TransientFetchError("503"))

        producer = run_producer("P", discovery, engine, make_engine_config(retry_attempts=3))

        assert producer.state is ProducerState.EXHAUSTED
        assert drain(engine[0]) == ["P-1"]
        assert discovery.calls.count(("P", 0)) == 3

    def test_rate_limited_listing_backs_off(self, engine, discovery_factory, make_engine_config):
        queue, _, limiter = engine
        discovery = discovery_factory({"P": ["P-1"]}, page_size=2)
        discovery.fail("P", 0, RateLimitedError("429", retry_after=0.01))

        producer = run_producer("P", discovery, engine, make_engine_config())

        assert producer.state is ProducerState.EXHAUSTED
        assert limiter.get_interval("listing.example") == 1000

    def test_exhausted_retries_fail_without_advancing(self, engine, discovery_factory,
                                                      make_engine_config):
        queue, store, _ = engine
        discovery = discovery_factory({"P": ["P-1", "P-2"]}, page_size=2)
        discovery.fail("P", 0, *[TransientFetchError("timeout") for _ in range(3)])

        producer = run_producer("P", discovery, engine, make_engine_config(retry_attempts=3))

        assert producer.state is ProducerState.FAILED
        assert producer.last_error == "timeout"
        assert store.get_cursor("P") == 0
        assert queue.size() == 0

    def test_permanent_error_fails_immediately(self, engine, discovery_factory, make_engine_config):
        discovery = discovery_factory({"P": ["P-1"]})
        discovery.fail("P", 0, CrawlerError("HTTP 404"))

        producer = run_producer("P", discovery, engine, make_engine_config())

        assert producer.state is ProducerState.FAILED
        assert discovery.calls == [("P", 0)]

    def test_cursor_persistence_failure_keeps_crawling(self, engine, discovery_factory,
                                                       make_engine_config, monkeypatch):
        queue, store, _ = engine
        discovery = discovery_factory({"P": ["P-1", "P-2", "P-3"]}, page_size=2)

        def broken_advance(partition, cursor):
            raise StateManagementError("disk unavailable")

        monkeypatch.setattr(store, "advance_cursor", broken_advance)
        producer = run_producer("P", discovery, engine, make_engine_config(page_size=2))

        assert producer.state is ProducerState.EXHAUSTED
        assert producer.cursor == 3
        assert drain(queue) == ["P-1", "P-2", "P-3"]


class TestProducerStats:

    def test_stats_report_progress(self, engine, discovery_factory, make_engine_config):
        discovery = discovery_factory({"P": ["P-1", "P-2"]}, page_size=2)
        producer = run_producer("P", discovery, engine, make_engine_config(page_size=2))

        stats = producer.get_stats()
        assert stats["partition"] == "P"
        assert stats["state"] == "exhausted"
        assert stats["cursor"] == 2
        assert stats["pages_fetched"] == 2
        assert stats["keys_enqueued"] == 2
        assert stats["alive"] is False
