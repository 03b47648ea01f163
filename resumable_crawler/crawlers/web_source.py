"""
Generic web collaborators: a paginated search listing and a per-item page fetcher.

Field-level extraction is left to pluggable callables so the same classes
work against any source whose listing is an offset-paginated HTML or JSON
page.
"""

import re
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote

from .base import Discovery, ItemProcessor, Record
from .http_client import HTTPClient
from resumable_crawler.concurrent.models import WorkItem
from resumable_crawler.utils.errors import ContentParseError
from resumable_crawler.utils.logging import get_logger


DEFAULT_KEY_PATTERN = r"/browse/([A-Z][A-Z0-9_]*-\d+)"

KeyExtractor = Callable[[bytes], List[str]]
RecordParser = Callable[[WorkItem, str, bytes], Optional[Record]]


def regex_key_extractor(pattern: str = DEFAULT_KEY_PATTERN) -> KeyExtractor:
    """
    Build an extractor returning the first group of every ``pattern`` match,
    de-duplicated in page order.
    """
    compiled = re.compile(pattern)

    def extract(content: bytes) -> List[str]:
        text = content.decode("utf-8", errors="replace")
        return list(dict.fromkeys(compiled.findall(text)))

    return extract


def default_record_parser(item: WorkItem, url: str, content: bytes) -> Optional[Record]:
    """Wrap the raw page in a record; empty pages yield nothing."""
    text = content.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    return {
        "key": item.item_key,
        "partition": item.partition,
        "url": url,
        "fetched_at": datetime.now().isoformat(),
        "content": text,
    }


class PaginatedWebDiscovery(Discovery):
    """Lists item keys from a search URL taking ``{partition}``, ``{cursor}`` and ``{page_size}``."""

    def __init__(self, client: HTTPClient, search_url_template: str, page_size: int = 50,
                 key_extractor: Optional[KeyExtractor] = None):
        self.client = client
        self.search_url_template = search_url_template
        self.page_size = page_size
        self.key_extractor = key_extractor or regex_key_extractor()
        self.logger = get_logger(__name__)

    def page_url(self, partition: str, cursor: int) -> str:
        return self.search_url_template.format(
            partition=quote(partition), cursor=cursor, page_size=self.page_size
        )

    def list_items(self, partition: str, cursor: int) -> List[str]:
        url = self.page_url(partition, cursor)
        content = self.client.fetch(url)
        try:
            keys = self.key_extractor(content)
        except (ValueError, UnicodeError) as e:
            raise ContentParseError(
                f"Could not extract item keys from {url}: {e}",
                {"partition": partition, "cursor": cursor}
            )
        self.logger.debug(f"Listed {len(keys)} keys for {partition} at cursor {cursor}")
        return keys

    def rate_limit_key(self, partition: str) -> str:
        return HTTPClient.get_domain(self.page_url(partition, 0))


class WebItemProcessor(ItemProcessor):
    """Fetches the page at an item URL taking ``{key}`` and ``{partition}``."""

    def __init__(self, client: HTTPClient, item_url_template: str,
                 parser: Optional[RecordParser] = None):
        self.client = client
        self.item_url_template = item_url_template
        self.parser = parser or default_record_parser

    def item_url(self, item: WorkItem) -> str:
        return self.item_url_template.format(
            key=quote(item.item_key), partition=quote(item.partition)
        )

    def process(self, item: WorkItem) -> Optional[Record]:
        url = self.item_url(item)
        content = self.client.fetch(url)
        try:
            return self.parser(item, url, content)
        except (ValueError, KeyError, UnicodeError) as e:
            raise ContentParseError(
                f"Could not parse {item.item_key}: {e}",
                {"partition": item.partition, "item_key": item.item_key, "url": url}
            )

    def rate_limit_key(self, item: WorkItem) -> str:
        return HTTPClient.get_domain(self.item_url(item))
