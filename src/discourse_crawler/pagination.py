"""
Category listing pagination.

A category's topic listing is served in pages. Each page carries a
``more_topics_url`` cursor pointing at the next one, or nothing on the
last page. The walker follows those cursors strictly in order (page N+1
needs page N's cursor), persisting every page and the topics it lists.

Progress is durable page by page: a walk interrupted after page N resumes
at page N+1 on the next run, using the cursor stored with page N.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import MalformedResponseError
from .models import CrawlerOptions, CrawlSummary
from .utils import category_page_url, cursor_page_url, parse_iso_date

logger = logging.getLogger(__name__)


class PaginationWalker:
    """
    Enumerate every listing page of a category until the server reports no
    further page, creating a topic row for each newly listed topic.

    Usage:
        walker = PaginationWalker(store, fetcher, base_url, options)
        await walker.walk(category)
    """

    def __init__(self, store, fetcher, base_url: str, options: CrawlerOptions,
                 summary: Optional[CrawlSummary] = None):
        self.store = store
        self.fetcher = fetcher
        self.base_url = base_url
        self.options = options
        self.summary = summary or CrawlSummary()

    def effective_cutoff(self, category) -> Optional[datetime]:
        """
        Cutoff applied as the ``after`` filter on listing requests for ``category``.

        An explicit since-date always wins. Otherwise an incremental walk of a
        category whose listing was completed before is bounded by the newest
        topic creation time stored for that category. A category that never
        finished a walk, or any category under a full crawl, is unbounded, so a
        resumed walk requests exactly what an uninterrupted one would.
        """
        if self.options.since_date is not None:
            return self.options.since_date
        if self.options.full_crawl or not category.pages_crawled:
            return None
        return self.store.get_latest_topic_timestamp(category.forum_id, category_id=category.id)

    @staticmethod
    def _topic_list(data: Any, url: str) -> Dict[str, Any]:
        topic_list = data.get('topic_list') if isinstance(data, dict) else None
        if not isinstance(topic_list, dict) or not isinstance(topic_list.get('topics'), list):
            raise MalformedResponseError(f"Malformed topic listing from {url}", url=url)
        return topic_list

    def _store_topics(self, category_id: int, topics: List[Dict[str, Any]]) -> int:
        """Create a row per listed topic; returns how many were new."""
        before = self.store.count_topics(category_id)
        for entry in topics:
            remote_id = entry.get('id') if isinstance(entry, dict) else None
            if remote_id is None:
                logger.warning("Skipping topic entry without id in category %d", category_id)
                continue
            self.store.create_topic(
                category_id,
                remote_id,
                entry,
                created_at=parse_iso_date(entry.get('created_at')),
            )
        return self.store.count_topics(category_id) - before

    async def walk(self, category) -> int:
        """
        Walk the listing of ``category`` to its last page.

        Under a full crawl the walk restarts from page 0 and overwrites the
        stored pages; otherwise it resumes after the highest stored page.

        Args:
            category: Category row to walk

        Returns:
            Number of pages fetched
        """
        logger.info("Crawling category %d", category.remote_id)

        last_page = None if self.options.full_crawl else self.store.get_last_page(category.id)
        if last_page is not None and not last_page.more_topics_url:
            logger.info("Category %d listing already complete at page %d",
                        category.remote_id, last_page.page_number)
            self.store.update_category(category.id, pages_crawled=True)
            return 0

        cutoff = self.effective_cutoff(category)
        fetched = 0
        while True:
            if last_page is None:
                page_number = 0
                url = category_page_url(self.base_url, category.remote_id, cutoff)
            else:
                page_number = last_page.page_number + 1
                url = cursor_page_url(self.base_url, last_page.more_topics_url, cutoff)

            logger.info("Crawling page %d of category %d", page_number, category.remote_id)
            logger.debug("URL: %s", url)

            data = await self.fetcher.fetch(url)
            topic_list = self._topic_list(data, url)
            more_topics_url = topic_list.get('more_topics_url') or None

            created = self._store_topics(category.id, topic_list['topics'])

            if self.options.full_crawl:
                last_page = self.store.upsert_page(category.id, page_number, more_topics_url, data)
            else:
                last_page = self.store.create_page(category.id, page_number, more_topics_url, data)

            fetched += 1
            self.summary.pages_fetched += 1
            self.summary.topics_discovered += created
            logger.info("Page %d and its %d new topics committed to db", page_number, created)

            if not more_topics_url:
                break

        self.store.update_category(category.id, pages_crawled=True)
        logger.info("Finished crawling category %d (%d pages)", category.remote_id, fetched)
        return fetched
