"""
Bounded work queue decoupling discovery from fetching.
"""

import threading
import time
from collections import deque
from typing import Deque, Optional

from .models import WorkItem, QueueStats
from .thread_safe import ThreadSafeCounter
from resumable_crawler.utils.errors import ValidationError
from resumable_crawler.utils.logging import get_logger


class WorkQueue:
    """
    Bounded, thread-safe FIFO of work items.

    Enqueueing never blocks: a full (or stopped) queue rejects the item and
    the caller decides how to back off. Dequeueing blocks until an item is
    available, the timeout elapses, or the queue is stopped.
    """

    def __init__(self, capacity: int = 1000):
        """
        Initialize the queue.

        Args:
            capacity: Maximum number of items held at once
        """
        if capacity < 1:
            raise ValidationError("Queue capacity must be at least 1", {"capacity": capacity})

        self.capacity = capacity
        self._items: Deque[WorkItem] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._running = False

        self._total_enqueued = ThreadSafeCounter()
        self._total_completed = ThreadSafeCounter()
        self._total_failed = ThreadSafeCounter()

        self.logger = get_logger(__name__)

    def start(self) -> None:
        """Start accepting items."""
        with self._lock:
            self._running = True
        self.logger.info(f"Work queue started (capacity={self.capacity})")

    def stop(self) -> None:
        """Stop the queue and wake every blocked consumer. Safe to call repeatedly."""
        with self._lock:
            was_running = self._running
            left = len(self._items)
            self._running = False
            self._not_empty.notify_all()
        if was_running:
            self.logger.info(f"Work queue stopped ({left} items left unconsumed)")

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def try_enqueue(self, item: WorkItem) -> bool:
        """
        Add an item without blocking.

        Args:
            item: Work item to add

        Returns:
            False when the queue is full or not running
        """
        with self._lock:
            if not self._running or len(self._items) >= self.capacity:
                return False
            self._items.append(item)
            self._total_enqueued.increment()
            self._not_empty.notify()
            return True

    def dequeue(self, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """
        Remove and return the oldest item, waiting for one if necessary.

        Args:
            timeout: Maximum seconds to wait; None waits until an item
                arrives or the queue is stopped

        Returns:
            The item, or None on timeout or once the queue is stopped
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._not_empty:
            while self._running and not self._items:
                if deadline is None:
                    self._not_empty.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(remaining)

            if not self._running:
                return None
            return self._items.popleft()

    def dequeue_nowait(self) -> Optional[WorkItem]:
        """Return the oldest item, or None if the queue is empty or stopped."""
        with self._lock:
            if not self._running or not self._items:
                return None
            return self._items.popleft()

    def mark_completed(self, success: bool = True) -> None:
        """
        Record that a dequeued item has been consumed.

        Args:
            success: False when the item was abandoned after a failure
        """
        if success:
            self._total_completed.increment()
        else:
            self._total_failed.increment()

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def stats(self) -> QueueStats:
        """Snapshot of the queue counters."""
        with self._lock:
            current_size = len(self._items)
            running = self._running
        return QueueStats(
            total_enqueued=self._total_enqueued.get_value(),
            total_completed=self._total_completed.get_value(),
            total_failed=self._total_failed.get_value(),
            current_size=current_size,
            capacity=self.capacity,
            running=running,
        )

    def clear(self) -> int:
        """
        Drop every queued item.

        Returns:
            Number of items removed
        """
        with self._lock:
            count = len(self._items)
            self._items.clear()
        if count:
            self.logger.info(f"Cleared {count} items from work queue")
        return count

    def __len__(self) -> int:
        return self.size()

    def __str__(self) -> str:
        stats = self.stats()
        return (f"WorkQueue(size={stats.current_size}/{stats.capacity}, "
                f"enqueued={stats.total_enqueued}, completed={stats.total_completed})")

    def __repr__(self) -> str:
        return self.__str__()
