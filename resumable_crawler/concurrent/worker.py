"""
Fetch worker: consumes work items, fetches them and commits completion.
"""

import threading
from typing import Dict, Any, Optional

from .models import EngineConfig, WorkItem, WorkerState, WorkerStatus
from .rate_controller import DomainRateLimiter
from .work_queue import WorkQueue
from resumable_crawler.crawlers.base import ItemProcessor, RecordWriter
from resumable_crawler.services.state_manager import StateStore
from resumable_crawler.utils.errors import (
    ContentParseError, RateLimitedError, ResumableCrawlerError
)
from resumable_crawler.utils.logging import get_logger


class FetchWorker(threading.Thread):
    """
    Worker thread of the shared fetch pool.

    A failure while handling one item abandons only that item; the loop
    carries on with the next one.
    """

    def __init__(self, worker_id: str, work_queue: WorkQueue, state_store: StateStore,
                 rate_limiter: DomainRateLimiter, processor: ItemProcessor,
                 writer: RecordWriter, config: EngineConfig):
        super().__init__(name=f"FetchWorker-{worker_id}", daemon=True)
        self.worker_id = worker_id
        self.work_queue = work_queue
        self.state_store = state_store
        self.rate_limiter = rate_limiter
        self.processor = processor
        self.writer = writer
        self.config = config

        self.status = WorkerStatus(worker_id=worker_id)
        self._stop_event = threading.Event()
        self.logger = get_logger(__name__)

    def stop(self) -> None:
        """Ask the worker to stop after its current item."""
        self._stop_event.set()

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        self.logger.info(f"Worker {self.worker_id} started")
        self.status.state = WorkerState.IDLE

        while not self.should_stop():
            item = self.work_queue.dequeue(timeout=self.config.poll_timeout)
            if item is None:
                if not self.work_queue.is_running():
                    # Stopped queue returns immediately; avoid spinning until told to stop
                    self._stop_event.wait(self.config.poll_timeout)
                continue
            self._handle_item(item)

        self.status.state = WorkerState.STOPPED
        self.logger.info(
            f"Worker {self.worker_id} stopped: processed={self.status.items_processed}, "
            f"skipped={self.status.items_skipped}, failed={self.status.items_failed}"
        )

    def _handle_item(self, item: WorkItem) -> None:
        self.status.start_item(item.item_key)
        try:
            committed = self._process_item(item)
        except Exception as e:
            self.status.fail_item(str(e))
            if isinstance(e, ResumableCrawlerError):
                self.logger.warning(
                    f"Worker {self.worker_id} abandoned {item.partition}/{item.item_key}: {e}"
                )
            else:
                self.logger.error(
                    f"Worker {self.worker_id} hit unexpected error on "
                    f"{item.partition}/{item.item_key}: {e}",
                    exc_info=True
                )
            self.work_queue.mark_completed(success=False)
            return

        if committed is None:
            self.status.skip_item()
        else:
            self.status.complete_item(committed)
        self.work_queue.mark_completed(success=True)

    def _process_item(self, item: WorkItem) -> Optional[bool]:
        """
        Fetch, write and commit one item.

        Returns:
            None if the item was already processed, otherwise whether this
            worker's commit was the one that recorded it
        """
        if self.state_store.is_processed(item.partition, item.item_key):
            self.logger.debug(f"Skipping already processed {item.partition}/{item.item_key}")
            return None

        limit_key = self.processor.rate_limit_key(item)
        self.rate_limiter.wait_for_permission(limit_key)
        try:
            record = self.processor.process(item)
        except RateLimitedError:
            self.rate_limiter.handle_rate_limit_error(limit_key)
            raise
        finally:
            self.rate_limiter.record_request(limit_key)

        if record is None:
            raise ContentParseError(
                f"No record produced for {item.item_key}",
                {"partition": item.partition, "item_key": item.item_key}
            )

        self.writer.write(item.partition, record)

        committed = self.state_store.try_commit(item.partition, item.item_key)
        if not committed:
            self.logger.debug(f"{item.partition}/{item.item_key} was committed by another worker")
        return committed

    def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop the worker and wait for it to finish.

        Args:
            timeout: Maximum time to wait for the thread
        """
        self.stop()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                self.logger.warning(f"Worker {self.worker_id} did not stop within {timeout}s")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "state": self.status.state.value,
            "current_item": self.status.current_item,
            "items_processed": self.status.items_processed,
            "items_skipped": self.status.items_skipped,
            "items_failed": self.status.items_failed,
            "commits": self.status.commits,
            "duplicate_commits": self.status.duplicate_commits,
            "last_error": self.status.error_message,
            "alive": self.is_alive(),
        }
