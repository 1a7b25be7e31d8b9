"""
Incremental crawler for Discourse forums.

``DiscourseCrawler`` drives the whole crawl as a state machine over the
stored entities:

1. **Forum**: resolved by base URL, created on first sight
2. **Categories**: discovered once from ``categories.json``
3. **Pages**: each category's listing walked to its last page
4. **Posts**: each listed topic's posts collected and reconciled

Every entity carries a "crawled" flag that is only flipped after its
fetch+persist sequence fully completes, so a killed run can simply be
started again. A full crawl clears all flags of the forum first.

Failures local to one category or topic are logged and the run moves
on; only failing to resolve the forum, or to discover categories for a
forum that never had any, aborts the run.

Usage:
    crawler = DiscourseCrawler.create("https://meta.discourse.org", "discourse.db")
    try:
        await crawler.crawl()
    finally:
        await crawler.close()
"""

import logging
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .errors import CrawlAbortedError, CrawlerError, MalformedResponseError, PersistenceError
from .fetcher import RateLimitedFetcher
from .models import CrawlerOptions, CrawlSummary
from .pagination import PaginationWalker
from .posts import TopicPostCollector
from .state_manager import DEFAULT_DB_PATH, CrawlStore
from .utils import categories_url, normalize_base_url

logger = logging.getLogger(__name__)


class DiscourseCrawler:
    """
    Crawl one Discourse forum into a crawl store.

    The store and fetcher are injected so either can be replaced (an
    in-memory store, a scripted fetcher) without touching the crawl logic.
    ``create`` wires up the default SQLite store and HTTP fetcher.
    """

    def __init__(
        self,
        base_url: str,
        store: CrawlStore,
        fetcher: RateLimitedFetcher,
        options: Optional[CrawlerOptions] = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.store = store
        self.fetcher = fetcher
        self.options = options or CrawlerOptions()
        self.summary = CrawlSummary()
        self.walker = PaginationWalker(store, fetcher, self.base_url, self.options, self.summary)
        self.collector = TopicPostCollector(store, fetcher, self.base_url, self.options, self.summary)

    @classmethod
    def create(
        cls,
        url: str,
        storage_path: str = DEFAULT_DB_PATH,
        options: Optional[CrawlerOptions] = None,
    ) -> "DiscourseCrawler":
        """
        Build a crawler backed by a SQLite store and a rate-limited HTTP fetcher.

        Args:
            url: Base URL of the Discourse forum
            storage_path: Path to the database file
            options: Run options; defaults to an incremental crawl at 500ms pacing
        """
        options = options or CrawlerOptions()
        store = CrawlStore(storage_path)
        fetcher = RateLimitedFetcher(rate_limit_ms=options.rate_limit_ms)
        return cls(url, store, fetcher, options)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Release the HTTP client and the database engine."""
        try:
            await self.fetcher.aclose()
        finally:
            self.store.close()

    # -------------------------------------------------------
    # RUN
    # -------------------------------------------------------

    async def crawl(self) -> CrawlSummary:
        """
        Run one crawl of the forum.

        Raises:
            CrawlAbortedError: the forum could not be resolved, or its
                               categories could not be discovered the first time

        Returns:
            Counters for this run
        """
        forum = self._get_forum()
        logger.info("Starting crawling forum: %s", forum.url)

        if self.options.full_crawl:
            self._reset_crawled_state(forum)

        await self._discover_categories(forum)

        try:
            categories = self.store.find_categories_by_forum(forum.id)
        except PersistenceError as e:
            raise CrawlAbortedError(f"Could not load categories for {forum.url}: {e}") from e

        logger.info("Proceeding to crawl %d categories found in DB for forum %s",
                    len(categories), forum.url)
        for category in categories:
            await self._crawl_category(category)

        logger.info("Finished crawling categories. Proceeding to crawl topics for forum %s",
                    forum.url)
        await self._crawl_topics(categories)

        logger.info("Completed crawling forum %s: %s", forum.url, self.summary.get_summary())
        logger.info("HTTP statistics:\n%s", self.fetcher.stats.get_summary())
        return self.summary

    def _get_forum(self):
        try:
            forum = self.store.create_forum(self.base_url, categories_crawled=False)
            logger.debug("Resolved forum %s as id %d", self.base_url, forum.id)
            return forum
        except PersistenceError as e:
            logger.error("Could not get or create forum entry for %s: %s", self.base_url, e)
            raise CrawlAbortedError(f"Could not initialize forum {self.base_url}: {e}") from e

    def _reset_crawled_state(self, forum) -> None:
        logger.info("Resetting crawled state for forum %d", forum.id)
        try:
            self.store.reset_crawled_state(forum.id)
            logger.info("Crawled state reset complete")
        except PersistenceError as e:
            logger.error("Failed to reset crawled state for forum %d: %s", forum.id, e)

    # -------------------------------------------------------
    # CATEGORIES
    # -------------------------------------------------------

    @staticmethod
    def _category_entries(data: Any, url: str) -> List[Dict[str, Any]]:
        category_list = data.get('category_list') if isinstance(data, dict) else None
        if not isinstance(category_list, dict) or not isinstance(category_list.get('categories'), list):
            raise MalformedResponseError(f"Malformed category data from {url}", url=url)
        return category_list['categories']

    async def _discover_categories(self, forum) -> None:
        """
        Store every category listed by the forum and mark it discovered.

        ``forum`` is the row as it was before any reset, so a full crawl
        of an already discovered forum keeps going on failure.
        """
        if forum.categories_crawled and not self.options.full_crawl:
            logger.info("Skipping fetching categories for forum %s as they are already "
                        "marked crawled", forum.url)
            return

        url = categories_url(self.base_url)
        logger.info("Fetching categories from %s", url)
        try:
            data = await self.fetcher.fetch(url)
            entries = self._category_entries(data, url)
            logger.info("Found %d categories for forum %s", len(entries), forum.url)

            for entry in entries:
                remote_id = entry.get('id') if isinstance(entry, dict) else None
                if remote_id is None:
                    logger.warning("Skipping category entry without id from %s", url)
                    continue
                try:
                    self.store.create_category(
                        forum.id, remote_id, entry.get('topic_url'), entry, pages_crawled=False
                    )
                    self.summary.categories_discovered += 1
                except PersistenceError as e:
                    logger.error("Failed to store category %s (%s) for forum %s: %s",
                                 remote_id, entry.get('slug'), forum.url, e)

            self.store.update_forum(forum.id, categories_crawled=True)
            logger.info("Categories committed to database and forum marked as categories_crawled")
        except CrawlerError as e:
            logger.error("Failed to fetch or process categories for forum %s: %s", forum.url, e)
            if not forum.categories_crawled:
                raise CrawlAbortedError(
                    f"Could not fetch initial categories for {forum.url}: {e}"
                ) from e
            # stored categories are still valid; undo the reset of the forum flag
            try:
                self.store.update_forum(forum.id, categories_crawled=True)
            except PersistenceError as restore_error:
                logger.error("Could not restore categories_crawled for forum %s: %s",
                             forum.url, restore_error)

    async def _crawl_category(self, category) -> None:
        if category.pages_crawled and not self.options.full_crawl:
            logger.info("Category %d has already been crawled", category.remote_id)
            self.summary.categories_skipped += 1
            return

        try:
            await self.walker.walk(category)
            self.summary.categories_walked += 1
        except CrawlerError as e:
            self.summary.categories_failed += 1
            logger.error("Failed to crawl category %d (%s): %s",
                         category.remote_id, getattr(e, 'url', None) or self.base_url, e)
        except Exception:
            self.summary.categories_failed += 1
            logger.exception("Unexpected error crawling category %d", category.remote_id)

    # -------------------------------------------------------
    # TOPICS
    # -------------------------------------------------------

    def should_skip_topic(self, topic) -> bool:
        """
        Decide whether a topic's posts can be left alone this run.

        A topic is skipped only when its posts are already crawled, this is
        not a full crawl, and either no since-date is set or the topic was
        last crawled on or after it.
        """
        if not topic.posts_crawled or self.options.full_crawl:
            return False
        since = self.options.since_date
        if since is None:
            return True
        return topic.last_crawled_at is not None and topic.last_crawled_at >= since

    async def _crawl_topics(self, categories) -> None:
        pending = []
        for category in categories:
            try:
                topics = self.store.get_topics_by_category(category.id)
            except PersistenceError as e:
                logger.error("Could not list topics of category %d: %s", category.remote_id, e)
                continue
            for topic in topics:
                if self.should_skip_topic(topic):
                    logger.debug("Skipping topic %d - already crawled", topic.remote_id)
                    self.summary.topics_skipped += 1
                else:
                    pending.append(topic)

        logger.info("%d topics to crawl, %d skipped", len(pending), self.summary.topics_skipped)

        for topic in tqdm(pending, desc="Crawling topics", unit="topic", disable=None):
            try:
                await self.collector.collect(topic)
                self.summary.topics_collected += 1
            except CrawlerError as e:
                self.summary.topics_failed += 1
                logger.error("Exception in topic %d: %s", topic.remote_id, e)
            except Exception:
                self.summary.topics_failed += 1
                logger.exception("Unexpected error in topic %d", topic.remote_id)
