"""
Per-domain rate limiter for the concurrent crawl engine.

Each rate limit key (normally a remote host) gets its own tracker, created
on first use and swept once it has been idle for longer than the idle
timeout. Callers on the same key are paced through that tracker's
condition; callers on different keys never contend beyond a short
registry lookup.
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional

import schedule

from .models import DomainStats
from resumable_crawler.utils.logging import get_logger


class DomainTracker:
    """Pacing state of one rate limit key."""

    def __init__(self, key: str, min_interval_ms: int):
        self.key = key
        self.min_interval_ms = min_interval_ms
        self.request_count = 0
        self.last_request_time: Optional[datetime] = None

        # Monotonic anchors: the last granted permission and the last recorded request
        self.last_grant: Optional[float] = None
        self.last_record: Optional[float] = None
        self.last_activity = time.monotonic()

        self.lock = threading.Lock()
        self.condition = threading.Condition(self.lock)
        self.pinned = 0  # callers currently holding a reference
        self.outstanding = 0  # grants not yet recorded

    def anchor(self) -> Optional[float]:
        stamps = [s for s in (self.last_grant, self.last_record) if s is not None]
        return max(stamps) if stamps else None

    def snapshot(self) -> DomainStats:
        return DomainStats(
            key=self.key,
            min_interval_ms=self.min_interval_ms,
            last_request_time=self.last_request_time,
            request_count=self.request_count,
        )


class DomainRateLimiter:
    """
    Enforces a minimum interval between requests to the same key.

    Thread-safe; one instance is shared by every producer and worker of a
    crawl.
    """

    def __init__(self, default_interval_ms: int = 2000, max_interval_ms: int = 60000,
                 idle_timeout: float = 600.0, sweep_interval: float = 300.0):
        """
        Initialize rate limiter.

        Args:
            default_interval_ms: Minimum spacing for newly created trackers
            max_interval_ms: Upper bound when backing off after rate limit responses
            idle_timeout: Seconds without activity before a tracker is swept
            sweep_interval: Seconds between background sweeps
        """
        self.default_interval_ms = default_interval_ms
        self.max_interval_ms = max(max_interval_ms, default_interval_ms)
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval

        self._trackers: Dict[str, DomainTracker] = {}
        self._registry_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._scheduler = schedule.Scheduler()
        self._sweep_thread: Optional[threading.Thread] = None

        self.logger = get_logger(__name__)
        self.logger.info(
            f"Rate limiter initialized: {default_interval_ms}ms default interval, "
            f"idle timeout {idle_timeout}s"
        )

    def start(self) -> None:
        """Start the background idle-tracker sweep."""
        with self._registry_lock:
            if self._sweep_thread is not None or self._stop_event.is_set():
                return
            self._scheduler.every(self.sweep_interval).seconds.do(self.sweep_idle_trackers)
            self._sweep_thread = threading.Thread(
                target=self._run_sweeper, name="RateLimiterSweep", daemon=True
            )
            self._sweep_thread.start()

    def _run_sweeper(self) -> None:
        tick = min(1.0, self.sweep_interval)
        while not self._stop_event.wait(tick):
            try:
                self._scheduler.run_pending()
            except Exception as e:
                self.logger.error(f"Idle tracker sweep failed: {e}")

    def _get_tracker(self, key: str, pin: bool = False) -> DomainTracker:
        with self._registry_lock:
            tracker = self._trackers.get(key)
            if tracker is None:
                tracker = DomainTracker(key, self.default_interval_ms)
                self._trackers[key] = tracker
                self.logger.debug(f"Created rate limit tracker for {key}")
            if pin:
                tracker.pinned += 1
            return tracker

    @contextmanager
    def _pinned_tracker(self, key: str) -> Iterator[DomainTracker]:
        tracker = self._get_tracker(key, pin=True)
        try:
            yield tracker
        finally:
            with self._registry_lock:
                tracker.pinned -= 1

    def wait_for_permission(self, key: str) -> float:
        """
        Block until a request to ``key`` is allowed.

        A caller is released once the previous request on the key has been
        recorded and the interval has passed since the later of that record
        and the previous grant. Every grant must therefore be followed by
        ``record_request``. With a zero interval callers are never held back.

        The tracker lock is released while waiting, so ``record_request``,
        ``update_interval`` and ``handle_rate_limit_error`` on the same key
        are not stalled by a sleeping caller. Once the limiter is shut down,
        waits return immediately and a warning is logged.

        Args:
            key: Rate limit key

        Returns:
            Seconds spent waiting
        """
        with self._pinned_tracker(key) as tracker, tracker.condition:
            start = None
            while True:
                interval = tracker.min_interval_ms / 1000.0
                if interval > 0 and tracker.outstanding:
                    # Previous grant not recorded yet
                    timeout = interval
                else:
                    anchor = tracker.anchor()
                    timeout = 0.0 if anchor is None else interval - (time.monotonic() - anchor)
                    if timeout <= 0:
                        break

                if self._stop_event.is_set():
                    self.logger.warning(f"Rate limiter is shut down, not pacing request to {key}")
                    break
                if start is None:
                    start = time.monotonic()
                    self.logger.debug(f"Rate limiting {key}: waiting up to {timeout:.3f}s")
                tracker.condition.wait(timeout)

            now = time.monotonic()
            tracker.last_grant = now
            tracker.last_activity = now
            if tracker.min_interval_ms > 0:
                tracker.outstanding += 1
            return 0.0 if start is None else now - start

    def record_request(self, key: str) -> None:
        """Stamp now as the last request time for ``key`` and count it."""
        with self._pinned_tracker(key) as tracker, tracker.condition:
            now = time.monotonic()
            tracker.last_record = now
            tracker.last_activity = now
            tracker.last_request_time = datetime.now()
            tracker.request_count += 1
            tracker.outstanding = max(0, tracker.outstanding - 1)
            tracker.condition.notify_all()

    def update_interval(self, key: str, interval_ms: int) -> None:
        """
        Change the minimum interval for ``key``.

        Callers still waiting on the key re-check against the new interval;
        callers already past their wait are unaffected.
        """
        if interval_ms < 0:
            raise ValueError(f"interval_ms must not be negative: {interval_ms}")
        with self._pinned_tracker(key) as tracker, tracker.condition:
            old_interval = tracker.min_interval_ms
            tracker.min_interval_ms = interval_ms
            tracker.condition.notify_all()
        self.logger.info(f"Rate limit interval for {key}: {old_interval}ms -> {interval_ms}ms")

    def handle_rate_limit_error(self, key: str) -> int:
        """
        Back off after the remote side signalled rate limiting.

        Doubles the interval for ``key`` (capped at ``max_interval_ms``) and
        restarts its pacing window from now.

        Returns:
            The new interval in milliseconds
        """
        with self._pinned_tracker(key) as tracker, tracker.condition:
            new_interval = min(max(tracker.min_interval_ms * 2, 1000), self.max_interval_ms)
            tracker.min_interval_ms = new_interval
            tracker.last_record = time.monotonic()
            tracker.last_activity = tracker.last_record
            tracker.condition.notify_all()
        self.logger.warning(f"Rate limit signalled by {key}, interval now {new_interval}ms")
        return new_interval

    def get_interval(self, key: str) -> int:
        """Current minimum interval for ``key`` in milliseconds."""
        return self._get_tracker(key).min_interval_ms

    def get_stats(self, key: str) -> Optional[DomainStats]:
        """Snapshot of one tracker, or None if it does not exist."""
        with self._registry_lock:
            tracker = self._trackers.get(key)
        return tracker.snapshot() if tracker else None

    def stats(self) -> Dict[str, DomainStats]:
        """Snapshot of every live tracker."""
        with self._registry_lock:
            trackers = list(self._trackers.values())
        return {tracker.key: tracker.snapshot() for tracker in trackers}

    def sweep_idle_trackers(self) -> int:
        """
        Remove trackers idle for longer than ``idle_timeout``.

        Trackers referenced by an in-flight call, holding an unrecorded
        grant or whose lock is held are left alone.

        Returns:
            Number of trackers removed
        """
        now = time.monotonic()
        removed = []
        with self._registry_lock:
            for key, tracker in list(self._trackers.items()):
                if tracker.pinned or tracker.outstanding or now - tracker.last_activity < self.idle_timeout:
                    continue
                if not tracker.lock.acquire(blocking=False):
                    continue
                try:
                    del self._trackers[key]
                    removed.append(key)
                finally:
                    tracker.lock.release()

        if removed:
            self.logger.info(f"Swept {len(removed)} idle rate limit trackers: {', '.join(removed)}")
        return len(removed)

    def is_shutdown(self) -> bool:
        return self._stop_event.is_set()

    def shutdown(self, timeout: float = 5.0) -> None:
        """
        Stop the background sweep and release any sleeping callers.

        Safe to call more than once.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self._scheduler.clear()

        with self._registry_lock:
            trackers = list(self._trackers.values())
        for tracker in trackers:
            with tracker.condition:
                tracker.condition.notify_all()

        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=timeout)
            if self._sweep_thread.is_alive():
                self.logger.warning("Rate limiter sweep thread did not stop in time")

        self.logger.info(f"Rate limiter shut down ({len(self._trackers)} trackers)")

    def __str__(self) -> str:
        return f"DomainRateLimiter(default={self.default_interval_ms}ms, trackers={len(self._trackers)})"

    def __repr__(self) -> str:
        return self.__str__()
