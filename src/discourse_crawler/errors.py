"""
Exception hierarchy for the Discourse crawler.

Every failure the crawl engine knows how to classify derives from
``CrawlerError`` so callers can isolate one category or one topic with a
single ``except`` clause while still telling the kinds apart:

- ``FetchError``: transport failure, non-2xx status or exhausted
  rate-limit retries. Always raised, never swallowed by the fetcher.
- ``MalformedResponseError``: the remote service answered with a payload
  that does not have the expected structure.
- ``PersistenceError``: the storage layer failed.
- ``CrawlAbortedError``: a failure that makes the rest of the run
  meaningless (forum resolution, first category discovery).
"""

from typing import Any, Dict, Optional


class CrawlerError(Exception):
    """Base exception for all crawler errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FetchError(CrawlerError):
    """Raised when a remote document could not be fetched."""

    def __init__(self, message: str, url: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.url = url


class MalformedResponseError(CrawlerError):
    """Raised when a fetched document is missing expected structure."""

    def __init__(self, message: str, url: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.url = url


class PersistenceError(CrawlerError):
    """Raised when the crawl store fails to read or write."""
    pass


class CrawlAbortedError(CrawlerError):
    """Raised when a run cannot make any further progress."""
    pass
