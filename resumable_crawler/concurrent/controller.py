"""
Crawl coordinator: owns the lifecycle of queue, limiter, producers and workers.
"""

import threading
import time
from datetime import datetime
from typing import Dict, Any, List, Optional, Iterable

from .models import CrawlSummary, EngineConfig
from .producer import PartitionProducer
from .rate_controller import DomainRateLimiter
from .work_queue import WorkQueue
from .worker import FetchWorker
from resumable_crawler.crawlers.base import Discovery, ItemProcessor, RecordWriter
from resumable_crawler.services.state_manager import StateStore
from resumable_crawler.utils.errors import CrawlerError, ValidationError
from resumable_crawler.utils.logging import get_logger, get_structured_logger


class CrawlCoordinator:
    """
    Runs one crawl over a set of partitions.

    Starts the queue, the rate limiter sweep, the worker pool and one
    producer per partition, then waits until every producer has finished
    and the queue is empty (or a shutdown is requested) and tears
    everything down in order: producers, workers, queue, rate limiter,
    writer.
    """

    def __init__(self, config: EngineConfig, discovery: Discovery, processor: ItemProcessor,
                 writer: RecordWriter, state_store: Optional[StateStore] = None,
                 rate_limiter: Optional[DomainRateLimiter] = None,
                 state_dir: str = "crawl_state"):
        """
        Initialize coordinator.

        Args:
            config: Engine configuration
            discovery: Paginated listing collaborator
            processor: Fetch and transform collaborator
            writer: Output collaborator
            state_store: Shared state store; one over ``state_dir`` is created if omitted
            rate_limiter: Shared rate limiter; one is created from ``config`` if omitted
            state_dir: State directory for the default state store

        Raises:
            StateManagementError: If the state directory cannot be created
        """
        self.config = config
        self.discovery = discovery
        self.processor = processor
        self.writer = writer

        self.state_store = state_store or StateStore(state_dir)
        self.rate_limiter = rate_limiter or DomainRateLimiter(
            default_interval_ms=config.default_interval_ms,
            max_interval_ms=config.max_interval_ms,
            idle_timeout=config.tracker_idle_timeout,
            sweep_interval=config.sweep_interval,
        )
        self.work_queue = WorkQueue(capacity=config.queue_capacity)

        self._producers: Dict[str, PartitionProducer] = {}
        self._workers: List[FetchWorker] = []

        self._lock = threading.RLock()
        self._shutdown_event = threading.Event()
        self._started = False
        self._shut_down = False
        self._interrupted = False
        self._cleanup_errors: List[str] = []
        self._started_at: Optional[datetime] = None

        self.logger = get_logger(__name__)
        self.event_logger = get_structured_logger(__name__)

    def run(self, partitions: Iterable[str]) -> CrawlSummary:
        """
        Crawl ``partitions`` until they are exhausted or shutdown is requested.

        Args:
            partitions: Partition keys, one producer each

        Returns:
            Summary of the run
        """
        partitions = list(dict.fromkeys(partitions))
        if not partitions:
            raise ValidationError("At least one partition is required")

        with self._lock:
            if self._started or self._shut_down:
                raise CrawlerError("Coordinator has already been started")
            self._started = True
            self._started_at = datetime.now()

        summary = CrawlSummary(partitions=partitions, started_at=self._started_at)
        self.logger.info(
            f"Starting crawl of {len(partitions)} partitions with "
            f"{self.config.worker_count} workers: {', '.join(partitions)}"
        )

        try:
            self._start_components(partitions)
            self._wait_for_completion()
        finally:
            self.shutdown()

        return self._build_summary(summary)

    def _start_components(self, partitions: List[str]) -> None:
        self.work_queue.start()
        self.rate_limiter.start()

        for i in range(self.config.worker_count):
            worker = FetchWorker(
                worker_id=f"worker-{i + 1}",
                work_queue=self.work_queue,
                state_store=self.state_store,
                rate_limiter=self.rate_limiter,
                processor=self.processor,
                writer=self.writer,
                config=self.config,
            )
            self._workers.append(worker)
            worker.start()

        for partition in partitions:
            producer = PartitionProducer(
                partition=partition,
                discovery=self.discovery,
                work_queue=self.work_queue,
                state_store=self.state_store,
                rate_limiter=self.rate_limiter,
                config=self.config,
            )
            self._producers[partition] = producer
            producer.start()

    def _is_terminal(self) -> bool:
        """All producers done and nothing left in the queue."""
        producers_done = all(p.is_finished() for p in self._producers.values())
        return producers_done and self.work_queue.size() == 0

    def _wait_for_completion(self) -> None:
        last_status_log = time.monotonic()

        while True:
            if self._shutdown_event.wait(self.config.completion_check_interval):
                self.logger.info("Shutdown requested, stopping crawl")
                return

            if self._is_terminal():
                self.logger.info("All producers finished and queue drained")
                return

            now = time.monotonic()
            if now - last_status_log >= self.config.status_log_interval:
                self._log_status()
                last_status_log = now

    def _log_status(self) -> None:
        stats = self.work_queue.stats()
        processed = sum(w.status.items_processed for w in self._workers)
        producers = ", ".join(f"{p}={prod.state.value}" for p, prod in self._producers.items())
        self.logger.info(
            f"Progress: queue {stats.current_size}/{stats.capacity} "
            f"(enqueued={stats.total_enqueued}, completed={stats.total_completed}, "
            f"failed={stats.total_failed}), processed={processed}, "
            f"rate limit trackers={len(self.rate_limiter.stats())}, producers: {producers}"
        )

    def request_shutdown(self) -> None:
        """Ask a running crawl to stop. Returns immediately; safe from signal handlers."""
        self._interrupted = True
        self._shutdown_event.set()

    def shutdown(self) -> None:
        """
        Stop every component in order. Each step is best effort and the
        whole sequence runs at most once.
        """
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

        self._shutdown_event.set()
        self.logger.info("Shutting down crawl components...")
        deadline = time.monotonic() + self.config.shutdown_timeout

        # 1. Producers
        for producer in self._producers.values():
            producer.stop()
        for producer in self._producers.values():
            self._join(producer, deadline)

        # 2. Workers
        for worker in self._workers:
            worker.stop()
        for worker in self._workers:
            self._join(worker, deadline)

        # 3. Queue
        try:
            self.work_queue.stop()
        except Exception as e:
            self._cleanup_errors.append(f"Queue shutdown: {e}")

        # 4. Rate limiter
        try:
            self.rate_limiter.shutdown()
        except Exception as e:
            self._cleanup_errors.append(f"Rate limiter shutdown: {e}")

        # 5. Output
        try:
            self.writer.flush()
            self.writer.close()
        except Exception as e:
            self._cleanup_errors.append(f"Writer close: {e}")

        if self._cleanup_errors:
            self.logger.warning(
                f"Shutdown completed with {len(self._cleanup_errors)} errors: "
                f"{'; '.join(self._cleanup_errors)}"
            )
        else:
            self.logger.info("Shutdown complete")

    def _join(self, thread: threading.Thread, deadline: float) -> None:
        if not thread.is_alive():
            return
        thread.join(timeout=max(0.0, deadline - time.monotonic()))
        if thread.is_alive():
            self._cleanup_errors.append(f"{thread.name} did not stop in time")

    def _build_summary(self, summary: CrawlSummary) -> CrawlSummary:
        summary.completed_at = datetime.now()
        summary.interrupted = self._interrupted
        for worker in self._workers:
            summary.items_processed += worker.status.items_processed
            summary.items_skipped += worker.status.items_skipped
            summary.items_failed += worker.status.items_failed
            summary.commits += worker.status.commits
            summary.duplicate_commits += worker.status.duplicate_commits
        for partition, producer in self._producers.items():
            summary.producer_states[partition] = producer.state.value
            summary.cursors[partition] = producer.cursor
            if producer.last_error:
                summary.errors.append(f"{partition}: {producer.last_error}")
        summary.errors.extend(self._cleanup_errors)
        summary.queue_stats = self.work_queue.stats()
        summary.domain_stats = self.rate_limiter.stats()

        self.event_logger.info(
            "crawl_finished",
            partitions=summary.partitions,
            duration_seconds=round(summary.get_duration(), 3),
            processed=summary.items_processed,
            skipped=summary.items_skipped,
            failed=summary.items_failed,
            commits=summary.commits,
            interrupted=summary.interrupted,
        )
        return summary

    def get_status(self) -> Dict[str, Any]:
        """Current status of the crawl."""
        with self._lock:
            if not self._started:
                status = "idle"
            elif self._shut_down:
                status = "stopped"
            elif self._shutdown_event.is_set():
                status = "stopping"
            else:
                status = "running"

        stats = self.work_queue.stats()
        return {
            "status": status,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "producers": {p: prod.get_stats() for p, prod in self._producers.items()},
            "workers": [w.get_stats() for w in self._workers],
            "items_processed": sum(w.status.items_processed for w in self._workers),
            "queue": {
                "current_size": stats.current_size,
                "capacity": stats.capacity,
                "total_enqueued": stats.total_enqueued,
                "total_completed": stats.total_completed,
                "total_failed": stats.total_failed,
                "pending": stats.pending,
            },
            "rate_limits": {
                key: {"min_interval_ms": s.min_interval_ms, "request_count": s.request_count}
                for key, s in self.rate_limiter.stats().items()
            },
        }

    def is_running(self) -> bool:
        with self._lock:
            return self._started and not self._shut_down

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with automatic cleanup."""
        self.shutdown()
        return False
