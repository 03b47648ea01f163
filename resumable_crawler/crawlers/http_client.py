"""
HTTP transport with retry logic for the crawl collaborators.

Politeness pacing is not done here; the engine's rate limiter gates every
call before it reaches the client.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from resumable_crawler.utils.errors import CrawlerError, RateLimitedError, TransientFetchError
from resumable_crawler.utils.logging import get_logger


DEFAULT_HEADERS = {
    'User-Agent': ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                   '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'Connection': 'keep-alive',
}


@dataclass
class RetryConfig:
    """Retry configuration."""
    max_attempts: int = 3
    backoff_factor: float = 2.0
    initial_delay: float = 1.0
    max_delay: float = 60.0
    retry_on_status: List[int] = field(default_factory=lambda: [429, 500, 502, 503, 504])


class HTTPClient:
    """requests-based client mapping HTTP failures onto the crawler error taxonomy."""

    def __init__(self,
                 retry_config: Optional[RetryConfig] = None,
                 timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None):
        """
        Initialize HTTP client.

        Args:
            retry_config: Retry configuration
            timeout: Request timeout in seconds
            headers: Headers merged over the defaults
        """
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self.session = self._create_session()
        self.logger = get_logger(__name__)

    def _create_session(self) -> requests.Session:
        """Create requests session with connection-level retries."""
        session = requests.Session()

        # Status codes are handled in fetch() so they map onto our errors
        retry_strategy = Retry(
            total=self.retry_config.max_attempts,
            read=0,
            status=0,
            backoff_factor=0.5,
            allowed_methods=["HEAD", "GET", "OPTIONS"],
            raise_on_status=False
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update(self.headers)

        return session

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None) -> bytes:
        """
        GET ``url`` and return the response body.

        Args:
            url: URL to request
            params: Query parameters

        Returns:
            Raw response body

        Raises:
            RateLimitedError: If the server kept answering 429
            TransientFetchError: If network errors or retryable statuses persisted
            CrawlerError: For any other unsuccessful status
        """
        attempts = self.retry_config.max_attempts
        last_error = "Unknown error"
        retry_after: Optional[float] = None
        rate_limited = False

        for attempt in range(attempts):
            try:
                self.logger.debug(f"GET {url} (attempt {attempt + 1})")
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = str(e)
                rate_limited = False
                retry_after = None
            else:
                status = response.status_code
                if status < 400:
                    return response.content

                if status not in self.retry_config.retry_on_status:
                    raise CrawlerError(
                        f"HTTP {status} for {url}",
                        {"url": url, "status_code": status}
                    )

                last_error = f"HTTP {status}"
                rate_limited = status == 429
                retry_after = self._get_retry_after(response)

            if attempt < attempts - 1:
                delay = retry_after if retry_after is not None else self._calculate_retry_delay(attempt)
                delay = min(delay, self.retry_config.max_delay)
                self.logger.warning(
                    f"Request failed, retrying: GET {url} (attempt {attempt + 1}, "
                    f"error: {last_error}, retry_delay: {delay:.1f}s)"
                )
                time.sleep(delay)

        details = {"url": url, "attempts": attempts, "last_error": last_error}
        self.logger.error(f"Request failed after all retries: GET {url} ({last_error})")
        if rate_limited:
            raise RateLimitedError(f"Rate limited by {self.get_domain(url)}", details,
                                   retry_after=retry_after)
        raise TransientFetchError(f"Request failed after {attempts} attempts", details)

    @staticmethod
    def get_domain(url: str) -> str:
        """Host part of ``url``, used as the rate limit key."""
        return urlparse(url).netloc or "unknown"

    def _get_retry_after(self, response: requests.Response) -> Optional[float]:
        """Extract retry-after header value."""
        retry_after = response.headers.get('Retry-After')
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                # HTTP-date form falls back to the computed delay
                pass
        return None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt."""
        delay = self.retry_config.initial_delay * (self.retry_config.backoff_factor ** attempt)
        # Jitter to avoid synchronized retries across workers
        delay += random.uniform(0.1, 0.5)
        return min(delay, self.retry_config.max_delay)

    def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
