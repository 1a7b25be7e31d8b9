"""
Topic post collection and edit reconciliation.

Fetching ``/t/{id}.json`` returns the first batch of posts together with
the topic's full ordered list of post identifiers (the "stream"). The
rest of the posts are requested from ``/t/{id}/posts.json`` in batches
of at most ``POST_BATCH_SIZE`` identifiers.

The remaining-identifiers list is advanced by the number of posts the
server actually returned, not by the batch size requested: a partial
batch is then asked for again instead of being skipped.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import MalformedResponseError
from .models import CrawlerOptions, CrawlSummary
from .utils import POST_BATCH_SIZE, topic_posts_url, topic_url, utcnow

logger = logging.getLogger(__name__)


class TopicPostCollector:
    """
    Fetch and reconcile every post of one topic.

    Usage:
        collector = TopicPostCollector(store, fetcher, base_url, options)
        await collector.collect(topic)
    """

    def __init__(self, store, fetcher, base_url: str, options: CrawlerOptions,
                 summary: Optional[CrawlSummary] = None, batch_size: int = POST_BATCH_SIZE):
        self.store = store
        self.fetcher = fetcher
        self.base_url = base_url
        self.options = options
        self.summary = summary or CrawlSummary()
        self.batch_size = batch_size

    @staticmethod
    def _post_stream(data: Any, url: str) -> Dict[str, Any]:
        stream = data.get('post_stream') if isinstance(data, dict) else None
        if not isinstance(stream, dict) or not isinstance(stream.get('posts'), list):
            raise MalformedResponseError(f"Missing post_stream.posts in response from {url}", url=url)
        return stream

    def reconcile(self, topic, posts: List[Dict[str, Any]]) -> int:
        """
        Store new posts and merge newer edits of known ones.

        Under a full crawl known posts are left untouched.

        Returns:
            Number of posts present in the batch
        """
        changed = 0
        for post in posts:
            remote_id = post.get('id')
            if remote_id is None:
                logger.warning("Skipping post without id in topic %d", topic.remote_id)
                continue

            existing = self.store.find_post(topic.id, remote_id)
            if existing is None:
                self.store.create_post(topic.id, remote_id, post)
                self.summary.posts_created += 1
                changed += 1
            elif not self.options.full_crawl:
                if self.store.update_post_if_newer(existing.id, post):
                    logger.info("New version of post %d found in topic %d", remote_id, topic.remote_id)
                    self.summary.posts_updated += 1
                    changed += 1

        logger.debug("%d posts inserted or updated out of %d posts", changed, len(posts))
        return len(posts)

    async def collect(self, topic) -> int:
        """
        Collect every post of ``topic`` and mark it crawled.

        The topic's flags are only touched after the last batch is stored,
        so a failure anywhere leaves the topic exactly as it was.

        Returns:
            Number of posts reconciled
        """
        logger.info("Crawling topic %d", topic.remote_id)

        url = topic_url(self.base_url, topic.remote_id)
        logger.debug("URL: %s", url)
        data = await self.fetcher.fetch(url)

        stream = self._post_stream(data, url)
        post_ids = stream.get('stream')
        if not isinstance(post_ids, list):
            raise MalformedResponseError(f"Missing post_stream.stream in response from {url}", url=url)

        self.store.update_topic(topic.id, topic_json=data)

        seen = self.reconcile(topic, stream['posts'])
        total = seen
        remaining = post_ids[seen:]

        while remaining:
            batch = remaining[:self.batch_size]
            url = topic_posts_url(self.base_url, topic.remote_id, batch)
            logger.debug("URL: %s", url)

            data = await self.fetcher.fetch(url)
            seen = self.reconcile(topic, self._post_stream(data, url)['posts'])
            if seen == 0:
                raise MalformedResponseError(
                    f"No posts returned for {len(batch)} requested ids from {url}", url=url
                )
            total += seen
            remaining = remaining[seen:]

        self.store.update_topic(topic.id, last_crawled_at=utcnow(), posts_crawled=True)
        logger.info("Finished crawling topic %d (%d posts)", topic.remote_id, total)
        return total
