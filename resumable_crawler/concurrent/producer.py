"""
Partition producer: pages through a partition's listing and feeds the work queue.
"""

import threading
from typing import Dict, Any, List, Optional

from .models import EngineConfig, ProducerState, WorkItem
from .rate_controller import DomainRateLimiter
from .work_queue import WorkQueue
from resumable_crawler.crawlers.base import Discovery
from resumable_crawler.services.state_manager import StateStore
from resumable_crawler.utils.errors import (
    CrawlerError, RateLimitedError, StateManagementError, TransientFetchError
)
from resumable_crawler.utils.logging import get_logger


class PartitionProducer(threading.Thread):
    """
    Discovery thread for a single partition.

    Resumes from the stored cursor, lists one page at a time under the rate
    limiter, enqueues the keys not yet processed and advances the cursor
    after each page. A full queue makes the producer pause and retry the
    same key rather than drop it.
    """

    def __init__(self, partition: str, discovery: Discovery, work_queue: WorkQueue,
                 state_store: StateStore, rate_limiter: DomainRateLimiter,
                 config: EngineConfig):
        super().__init__(name=f"Producer-{partition}", daemon=True)
        self.partition = partition
        self.discovery = discovery
        self.work_queue = work_queue
        self.state_store = state_store
        self.rate_limiter = rate_limiter
        self.config = config

        self._stop_event = threading.Event()
        self._finished = threading.Event()
        self._state = ProducerState.RESUMING
        self._state_lock = threading.Lock()

        self.cursor = 0
        self.pages_fetched = 0
        self.keys_enqueued = 0
        self.keys_skipped = 0
        self.last_error: Optional[str] = None

        self.logger = get_logger(__name__)

    @property
    def state(self) -> ProducerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ProducerState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            self._state = state
        self.logger.debug(f"Producer {self.partition} -> {state.value}")

    def stop(self) -> None:
        """Ask the producer to stop at its next check."""
        self._stop_event.set()

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    def is_finished(self) -> bool:
        """True once the thread has left its loop for good."""
        return self._finished.is_set()

    def run(self) -> None:
        self.logger.info(f"Producer {self.partition} started")
        try:
            self._produce()
        except Exception as e:
            self.last_error = str(e)
            self._set_state(ProducerState.FAILED)
            self.logger.error(f"Producer {self.partition} failed: {e}")
        finally:
            self._finished.set()
            self.logger.info(
                f"Producer {self.partition} finished ({self.state.value}): "
                f"cursor={self.cursor}, enqueued={self.keys_enqueued}, "
                f"skipped={self.keys_skipped}, pages={self.pages_fetched}"
            )

    def _produce(self) -> None:
        self._set_state(ProducerState.RESUMING)
        self.cursor = self.state_store.get_cursor(self.partition)
        if self.cursor:
            self.logger.info(f"Producer {self.partition} resuming at cursor {self.cursor}")

        limit_key = self.discovery.rate_limit_key(self.partition)

        while not self.should_stop():
            self._set_state(ProducerState.LISTING)
            batch = self._list_page(limit_key)
            if batch is None:
                return
            self.pages_fetched += 1

            if not batch:
                self._set_state(ProducerState.EXHAUSTED)
                return

            for item_key in batch:
                if not self._offer(item_key):
                    self._set_state(ProducerState.STOPPED)
                    return

            new_cursor = self.cursor + len(batch)
            try:
                self.state_store.advance_cursor(self.partition, new_cursor)
            except StateManagementError as e:
                # Keep going on the local cursor; the next run re-lists from the stored one
                self.logger.error(f"Producer {self.partition} could not persist cursor {new_cursor}: {e}")
            self.cursor = new_cursor

            if len(batch) < self.config.page_size:
                self._set_state(ProducerState.EXHAUSTED)
                return

        self._set_state(ProducerState.STOPPED)

    def _list_page(self, limit_key: str) -> Optional[List[str]]:
        """
        Fetch the page at the current cursor, retrying transient failures.

        Returns:
            The page, or None if the producer stopped or gave up
        """
        attempt = 0
        while True:
            if self.should_stop():
                self._set_state(ProducerState.STOPPED)
                return None

            # Every grant is followed by record_request, or the key stays held
            self.rate_limiter.wait_for_permission(limit_key)
            try:
                batch = self.discovery.list_items(self.partition, self.cursor)
            except TransientFetchError as e:
                error = e
            except CrawlerError as e:
                self.last_error = str(e)
                self.logger.error(f"Producer {self.partition} listing at {self.cursor} failed permanently: {e}")
                self._set_state(ProducerState.FAILED)
                return None
            else:
                return list(batch)
            finally:
                self.rate_limiter.record_request(limit_key)

            attempt += 1
            self.last_error = str(error)
            delay = min(self.config.retry_delay * (2 ** (attempt - 1)), self.config.max_retry_delay)
            if isinstance(error, RateLimitedError):
                self.rate_limiter.handle_rate_limit_error(limit_key)
                if error.retry_after:
                    delay = max(delay, min(error.retry_after, self.config.max_retry_delay))

            if attempt >= self.config.retry_attempts:
                self.logger.error(
                    f"Producer {self.partition} giving up on cursor {self.cursor} "
                    f"after {attempt} attempts: {error}"
                )
                self._set_state(ProducerState.FAILED)
                return None

            self.logger.warning(
                f"Producer {self.partition} listing failed (attempt {attempt}/"
                f"{self.config.retry_attempts}), retrying in {delay:.1f}s: {error}"
            )
            self._stop_event.wait(delay)

    def _offer(self, item_key: str) -> bool:
        """
        Enqueue ``item_key`` unless already processed, pausing while the queue is full.

        Returns:
            False if the producer was stopped before the key could be queued
        """
        if self.should_stop():
            return False

        if self.state_store.is_processed(self.partition, item_key):
            self.keys_skipped += 1
            return True

        item = WorkItem(partition=self.partition, item_key=item_key)
        while not self.work_queue.try_enqueue(item):
            if self.should_stop() or not self.work_queue.is_running():
                return False
            if self.state is not ProducerState.DRAINING:
                self._set_state(ProducerState.DRAINING)
                self.logger.debug(f"Producer {self.partition}: queue full, backing off")
            self._stop_event.wait(self.config.backpressure_delay)

        self._set_state(ProducerState.LISTING)
        self.keys_enqueued += 1
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "partition": self.partition,
            "state": self.state.value,
            "cursor": self.cursor,
            "pages_fetched": self.pages_fetched,
            "keys_enqueued": self.keys_enqueued,
            "keys_skipped": self.keys_skipped,
            "last_error": self.last_error,
            "alive": self.is_alive(),
        }
