"""
Concurrent crawl engine.

Main Components:
- CrawlCoordinator: Lifecycle owner and completion detection
- PartitionProducer: One discovery thread per partition
- FetchWorker: Pooled fetch/write/commit threads
- WorkQueue: Bounded queue between producers and workers
- DomainRateLimiter: Per-domain politeness delays

Producer, worker and coordinator depend on the state store and collaborator
interfaces, which themselves use the models here, so import them from their
modules (e.g. ``resumable_crawler.concurrent.controller``).
"""

from .models import (
    EngineConfig,
    WorkItem,
    PartitionState,
    DomainStats,
    QueueStats,
    ProducerState,
    WorkerState,
    WorkerStatus,
    CrawlSummary
)

from .thread_safe import ThreadSafeCounter, ReadWriteLock
from .work_queue import WorkQueue
from .rate_controller import DomainRateLimiter

__all__ = [
    # Models
    'EngineConfig',
    'WorkItem',
    'PartitionState',
    'DomainStats',
    'QueueStats',
    'ProducerState',
    'WorkerState',
    'WorkerStatus',
    'CrawlSummary',

    # Primitives
    'ThreadSafeCounter',
    'ReadWriteLock',

    # Components
    'WorkQueue',
    'DomainRateLimiter',
]
