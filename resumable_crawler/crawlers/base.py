"""
Abstract interfaces for the collaborators the crawl engine drives.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from resumable_crawler.concurrent.models import WorkItem


Record = Dict[str, Any]


class Discovery(ABC):
    """
    Paginated listing of the item keys in a partition.

    ``list_items`` returns the page starting at ``cursor`` (an offset into
    the listing). A page shorter than the engine's configured page size is
    taken to be the last one, and an empty page means the listing is
    exhausted.
    """

    @abstractmethod
    def list_items(self, partition: str, cursor: int) -> List[str]:
        """
        Return the ordered item keys of one page.

        Raises:
            TransientFetchError: If the page could not be fetched right now
        """

    @abstractmethod
    def rate_limit_key(self, partition: str) -> str:
        """Key the listing requests for ``partition`` are paced under."""


class ItemProcessor(ABC):
    """Fetches one item and transforms it into an output record."""

    @abstractmethod
    def process(self, item: WorkItem) -> Optional[Record]:
        """
        Fetch and transform ``item``.

        Returns:
            The record, or None if the content could not be used

        Raises:
            CrawlerError: If the item could not be fetched or parsed
        """

    @abstractmethod
    def rate_limit_key(self, item: WorkItem) -> str:
        """Key the fetch for ``item`` is paced under."""


class RecordWriter(ABC):
    """
    Append-only sink for records.

    Writing the same logical item more than once must be harmless.
    """

    @abstractmethod
    def write(self, partition: str, record: Record) -> None:
        """
        Append ``record`` to the output of ``partition``.

        Raises:
            OutputError: If the record could not be written
        """

    def flush(self) -> None:
        """Flush buffered output."""

    def close(self) -> None:
        """Release resources. Safe to call more than once."""
