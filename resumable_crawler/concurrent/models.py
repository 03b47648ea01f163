"""
Data models for the concurrent crawl engine.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List

from resumable_crawler.utils.errors import ValidationError


class ProducerState(Enum):
    """Lifecycle state of a partition producer."""
    RESUMING = "resuming"
    LISTING = "listing"
    DRAINING = "draining"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProducerState.EXHAUSTED, ProducerState.STOPPED, ProducerState.FAILED)


class WorkerState(Enum):
    """Worker thread state."""
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    STOPPED = "stopped"


@dataclass
class EngineConfig:
    """Tuning knobs for the crawl engine."""
    worker_count: int = 4
    queue_capacity: int = 1000
    page_size: int = 50
    default_interval_ms: int = 2000
    max_interval_ms: int = 60000
    tracker_idle_timeout: float = 600.0
    sweep_interval: float = 300.0
    poll_timeout: float = 5.0
    backpressure_delay: float = 5.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    completion_check_interval: float = 1.0
    status_log_interval: float = 30.0
    shutdown_timeout: float = 30.0

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            ValidationError: If configuration is invalid
        """
        errors = []

        if not (1 <= self.worker_count <= 64):
            errors.append("worker_count must be between 1 and 64")

        if self.queue_capacity < 1:
            errors.append("queue_capacity must be at least 1")

        if self.page_size < 1:
            errors.append("page_size must be at least 1")

        # Rate limiting
        if self.default_interval_ms < 0:
            errors.append("default_interval_ms must not be negative")

        if self.max_interval_ms < self.default_interval_ms:
            errors.append("max_interval_ms must not be below default_interval_ms")

        if self.tracker_idle_timeout <= 0:
            errors.append("tracker_idle_timeout must be positive")

        if self.sweep_interval <= 0:
            errors.append("sweep_interval must be positive")

        # Polling and pauses
        if not (0 < self.poll_timeout <= 60.0):
            errors.append("poll_timeout must be in (0, 60]")

        if self.backpressure_delay <= 0:
            errors.append("backpressure_delay must be positive")

        if not (1 <= self.retry_attempts <= 10):
            errors.append("retry_attempts must be between 1 and 10")

        if self.retry_delay < 0:
            errors.append("retry_delay must not be negative")

        if self.max_retry_delay < self.retry_delay:
            errors.append("max_retry_delay must not be below retry_delay")

        if self.completion_check_interval <= 0:
            errors.append("completion_check_interval must be positive")

        if self.status_log_interval <= 0:
            errors.append("status_log_interval must be positive")

        if self.shutdown_timeout <= 0:
            errors.append("shutdown_timeout must be positive")

        if errors:
            raise ValidationError(
                "Engine configuration validation failed",
                {"errors": errors}
            )


@dataclass(frozen=True)
class WorkItem:
    """One unit of fetch work: an item key within a partition."""
    partition: str
    item_key: str
    enqueued_at: datetime = field(default_factory=datetime.now)


@dataclass
class PartitionState:
    """Durable progress record of one partition."""
    partition: str
    cursor: int = 0
    last_item_key: Optional[str] = None
    processed_count: int = 0
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition": self.partition,
            "cursor": self.cursor,
            "last_item_key": self.last_item_key,
            "processed_count": self.processed_count,
            "last_update_time": (
                self.last_update_time.isoformat() if self.last_update_time else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionState":
        last_update = data.get("last_update_time")
        return cls(
            partition=data["partition"],
            cursor=int(data.get("cursor", 0)),
            last_item_key=data.get("last_item_key"),
            processed_count=int(data.get("processed_count", 0)),
            last_update_time=datetime.fromisoformat(last_update) if last_update else None,
        )


@dataclass(frozen=True)
class DomainStats:
    """Point-in-time snapshot of one rate limit tracker."""
    key: str
    min_interval_ms: int
    last_request_time: Optional[datetime]
    request_count: int


@dataclass(frozen=True)
class QueueStats:
    """Observability counters of the work queue. Not a source of truth."""
    total_enqueued: int
    total_completed: int
    total_failed: int
    current_size: int
    capacity: int
    running: bool

    @property
    def pending(self) -> int:
        """Items enqueued but not yet marked completed."""
        return self.total_enqueued - self.total_completed - self.total_failed


@dataclass
class WorkerStatus:
    """Status information for a fetch worker."""
    worker_id: str
    state: WorkerState = WorkerState.STARTING
    current_item: Optional[str] = None
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    commits: int = 0
    duplicate_commits: int = 0
    error_message: Optional[str] = None
    last_activity: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)

    def update_activity(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = datetime.now()

    def start_item(self, item_key: str) -> None:
        """Mark worker as working on an item."""
        self.state = WorkerState.WORKING
        self.current_item = item_key
        self.update_activity()

    def skip_item(self) -> None:
        """Item was already processed; no fetch was performed."""
        self.state = WorkerState.IDLE
        self.current_item = None
        self.items_skipped += 1
        self.update_activity()

    def complete_item(self, newly_committed: bool) -> None:
        """Item handled; ``newly_committed`` is False when another worker won the commit."""
        self.state = WorkerState.IDLE
        self.current_item = None
        self.items_processed += 1
        if newly_committed:
            self.commits += 1
        else:
            self.duplicate_commits += 1
        self.update_activity()

    def fail_item(self, error_message: str) -> None:
        """Mark the current item as abandoned."""
        self.state = WorkerState.IDLE
        self.current_item = None
        self.items_failed += 1
        self.error_message = error_message
        self.update_activity()


@dataclass
class CrawlSummary:
    """Overall result of one crawl run."""
    partitions: List[str]
    started_at: datetime
    completed_at: Optional[datetime] = None
    interrupted: bool = False
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    commits: int = 0
    duplicate_commits: int = 0
    producer_states: Dict[str, str] = field(default_factory=dict)
    cursors: Dict[str, int] = field(default_factory=dict)
    queue_stats: Optional[QueueStats] = None
    domain_stats: Dict[str, DomainStats] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def get_duration(self) -> float:
        """Run time in seconds."""
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["duration_seconds"] = round(self.get_duration(), 3)
        data["domain_stats"] = {
            key: {
                "min_interval_ms": stats.min_interval_ms,
                "request_count": stats.request_count,
                "last_request_time": (
                    stats.last_request_time.isoformat() if stats.last_request_time else None
                ),
            }
            for key, stats in self.domain_stats.items()
        }
        return data
