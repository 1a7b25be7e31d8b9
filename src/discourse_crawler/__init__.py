"""
Discourse Crawler - incremental crawl engine

This package harvests the content tree of a Discourse forum
(forum -> categories -> listing pages -> topics -> posts) into a local
SQLite database, resuming where the previous run stopped.

Main components:
- DiscourseCrawler: Orchestrator and public crawl API
- RateLimitedFetcher: Token-bucket admission plus flat pacing over httpx
- CrawlStore: SQLAlchemy-backed keyed store for every crawled entity
- PaginationWalker: Follows category listing cursors page by page
- TopicPostCollector: Fetches posts in batches and merges edits

Usage:
    from discourse_crawler import DiscourseCrawler, CrawlerOptions
    import asyncio

    async def main():
        crawler = DiscourseCrawler.create("https://meta.discourse.org", "discourse.db",
                                          CrawlerOptions(rate_limit_ms=500))
        try:
            await crawler.crawl()
        finally:
            await crawler.close()

    asyncio.run(main())
"""

from .crawler import DiscourseCrawler
from .errors import (
    CrawlAbortedError, CrawlerError, FetchError, MalformedResponseError, PersistenceError,
)
from .fetcher import RateLimitedFetcher
from .models import CrawlerOptions, CrawlSummary, PostSnapshot
from .pagination import PaginationWalker
from .posts import TopicPostCollector
from .state_manager import CrawlStore

__all__ = [
    'DiscourseCrawler',
    'CrawlerOptions',
    'CrawlSummary',
    'PostSnapshot',
    'RateLimitedFetcher',
    'CrawlStore',
    'PaginationWalker',
    'TopicPostCollector',
    'CrawlerError',
    'CrawlAbortedError',
    'FetchError',
    'MalformedResponseError',
    'PersistenceError',
]

__version__ = '1.0.0'
