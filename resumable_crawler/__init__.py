"""
Resumable concurrent crawl engine.

Discovers items from a paginated, rate-limited remote source, fetches each
one through a pool of workers and records durable, idempotent progress per
partition so an interrupted crawl resumes where it stopped.
"""

__version__ = "0.1.0"
