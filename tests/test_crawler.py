"""End-to-end crawl tests against a scripted fake forum."""

import asyncio
from datetime import datetime

import pytest

from discourse_crawler.crawler import DiscourseCrawler
from discourse_crawler.errors import CrawlAbortedError
from discourse_crawler.models import CrawlerOptions
from discourse_crawler.utils import categories_url, category_page_url, cursor_page_url, topic_url

from forum_builder import BASE_URL, FakeFetcher, ForumBuilder


def build_forum() -> ForumBuilder:
    """One category, two listing pages, three topics of five posts each."""
    builder = ForumBuilder().with_category(4, pages=[[101, 102], [103]])
    for topic_id in (101, 102, 103):
        start = topic_id * 10
        builder.with_topic(topic_id, post_ids=list(range(start, start + 5)))
    return builder


def run_crawl(store, fetcher, **option_kwargs):
    crawler = DiscourseCrawler(BASE_URL, store, fetcher, CrawlerOptions(**option_kwargs))
    summary = asyncio.run(crawler.crawl())
    return crawler, summary


def all_topics(store):
    forum = store.find_forum(BASE_URL)
    topics = []
    for category in store.find_categories_by_forum(forum.id):
        topics.extend(store.get_topics_by_category(category.id))
    return topics


class TestFirstCrawl:
    def test_fetches_each_document_once(self, store):
        fetcher = build_forum().build()
        _, summary = run_crawl(store, fetcher)

        assert fetcher.calls_matching("categories.json") == [categories_url(BASE_URL)]
        assert len(fetcher.calls_matching("/c/")) == 2
        assert len([url for url in fetcher.calls if url.endswith(".json") and "/t/" in url]) == 3
        assert fetcher.calls_matching("/posts.json") == []
        assert len(fetcher.calls) == 6

        assert summary.categories_discovered == 1
        assert summary.pages_fetched == 2
        assert summary.topics_collected == 3
        assert summary.posts_created == 15

    def test_every_flag_set(self, store):
        run_crawl(store, build_forum().build())

        forum = store.find_forum(BASE_URL)
        assert forum.categories_crawled is True
        category = store.find_category(forum.id, 4)
        assert category.pages_crawled is True
        topics = all_topics(store)
        assert len(topics) == 3
        assert all(t.posts_crawled and t.last_crawled_at is not None for t in topics)
        assert store.count_posts() == 15

    def test_base_url_normalised(self, store):
        fetcher = build_forum().build()
        crawler = DiscourseCrawler("https://forum.example.org", store, fetcher)
        asyncio.run(crawler.crawl())
        assert store.find_forum(BASE_URL) is not None

    def test_close_releases_fetcher(self, store):
        fetcher = FakeFetcher()
        crawler = DiscourseCrawler(BASE_URL, store, fetcher)
        asyncio.run(crawler.close())
        assert fetcher.closed is True

    def test_close_disposes_store_when_fetcher_close_fails(self, store):
        class BrokenCloseFetcher(FakeFetcher):
            async def aclose(self):
                raise RuntimeError("transport already gone")

        closed = []
        store.close = lambda: closed.append(True)
        crawler = DiscourseCrawler(BASE_URL, store, BrokenCloseFetcher())

        with pytest.raises(RuntimeError):
            asyncio.run(crawler.close())
        assert closed == [True]


class TestResume:
    def test_second_run_fetches_nothing(self, store):
        run_crawl(store, build_forum().build())

        second = FakeFetcher()
        _, summary = run_crawl(store, second)

        assert second.calls == []
        assert summary.categories_skipped == 1
        assert summary.topics_skipped == 3
        assert store.count_posts() == 15

    def test_failed_topic_retried_next_run(self, store):
        builder = build_forum()
        fetcher = builder.build()
        del fetcher.responses[topic_url(BASE_URL, 102)]

        _, summary = run_crawl(store, fetcher)

        assert summary.topics_collected == 2
        assert summary.topics_failed == 1
        flags = {t.remote_id: t.posts_crawled for t in all_topics(store)}
        assert flags == {101: True, 102: False, 103: True}

        retry = build_forum().build()
        _, summary = run_crawl(store, retry)

        assert retry.calls[0] == topic_url(BASE_URL, 102)
        assert all("/t/102" in url for url in retry.calls)
        assert all(t.posts_crawled for t in all_topics(store))
        assert store.count_posts() == 15

    def test_failed_category_does_not_stop_others(self, store):
        builder = ForumBuilder().with_category(7, pages=[[201]])
        builder.with_topic(201, post_ids=[1, 2])
        fetcher = builder.build()
        # category 4 is listed but its listing is unreachable
        fetcher.responses[categories_url(BASE_URL)]["category_list"]["categories"].insert(
            0, {"id": 4, "slug": "cat-4", "topic_url": "/t/about/4"}
        )

        _, summary = run_crawl(store, fetcher)

        forum = store.find_forum(BASE_URL)
        assert store.find_category(forum.id, 4).pages_crawled is False
        assert store.find_category(forum.id, 7).pages_crawled is True
        assert summary.categories_failed == 1
        assert summary.topics_collected == 1


class TestResumeAfterInterruptedWalk:
    """A re-invoked run must request the same listing URLs an uninterrupted run would."""

    def _forum(self) -> ForumBuilder:
        builder = ForumBuilder()
        builder.with_category(4, pages=[[101], [102]], created_at="2022-01-01T00:00:00.000Z")
        builder.with_category(7, pages=[[201]], created_at="2024-06-01T00:00:00.000Z")
        for topic_id in (101, 102, 201):
            builder.with_topic(topic_id, post_ids=[topic_id * 10 + 1, topic_id * 10 + 2])
        return builder

    def test_category_failed_on_first_page(self, store):
        first = self._forum().build()
        del first.responses[category_page_url(BASE_URL, 4)]
        run_crawl(store, first)

        second = self._forum().build()
        run_crawl(store, second)

        assert second.calls_matching("/c/") == [
            "https://forum.example.org/c/4.json?page=0",
            "https://forum.example.org/c/cat-4/4.json?page=1",
        ]
        self._assert_complete(store)

    def test_category_failed_mid_walk(self, store):
        first = self._forum().build()
        del first.responses[cursor_page_url(BASE_URL, "/c/cat-4/4?page=1")]
        run_crawl(store, first)

        second = self._forum().build()
        run_crawl(store, second)

        assert second.calls_matching("/c/") == ["https://forum.example.org/c/cat-4/4.json?page=1"]
        self._assert_complete(store)

    def _assert_complete(self, store):
        forum = store.find_forum(BASE_URL)
        assert all(c.pages_crawled for c in store.find_categories_by_forum(forum.id))
        assert sorted(t.remote_id for t in all_topics(store)) == [101, 102, 201]
        assert all(t.posts_crawled for t in all_topics(store))
        assert store.count_posts() == 6


class TestSinceDate:
    def _crawled_on(self, store, when):
        run_crawl(store, build_forum().build())
        for topic in all_topics(store):
            store.update_topic(topic.id, last_crawled_at=when)

    def test_topics_crawled_before_since_are_revisited(self, store):
        self._crawled_on(store, datetime(2023, 1, 1))

        fetcher = build_forum().build()
        _, summary = run_crawl(store, fetcher, since_date=datetime(2023, 6, 1))

        topic_fetches = [url for url in fetcher.calls if "/t/" in url and "/posts.json" not in url]
        assert len(topic_fetches) == 3
        assert summary.topics_collected == 3
        assert store.count_posts() == 15

    def test_topics_crawled_after_since_are_skipped(self, store):
        self._crawled_on(store, datetime(2023, 1, 1))

        fetcher = build_forum().build()
        _, summary = run_crawl(store, fetcher, since_date=datetime(2022, 1, 1))

        assert fetcher.calls_matching("/t/") == []
        assert summary.topics_skipped == 3

    def test_should_skip_topic(self, store):
        self._crawled_on(store, datetime(2023, 1, 1))
        topic = all_topics(store)[0]

        def crawler(**kwargs):
            return DiscourseCrawler(BASE_URL, store, FakeFetcher(), CrawlerOptions(**kwargs))

        assert crawler().should_skip_topic(topic) is True
        assert crawler(full_crawl=True).should_skip_topic(topic) is False
        assert crawler(since_date=datetime(2023, 6, 1)).should_skip_topic(topic) is False
        assert crawler(since_date=datetime(2023, 1, 1)).should_skip_topic(topic) is True


class TestFullCrawl:
    def test_refetches_everything(self, store):
        run_crawl(store, build_forum().build())

        fetcher = build_forum().build()
        _, summary = run_crawl(store, fetcher, full_crawl=True)

        assert len(fetcher.calls_matching("categories.json")) == 1
        assert len(fetcher.calls_matching("/c/")) == 2
        assert summary.topics_collected == 3
        assert summary.posts_created == 0
        assert store.count_posts() == 15
        assert all(t.posts_crawled for t in all_topics(store))

    def test_discovery_failure_keeps_known_categories(self, store):
        run_crawl(store, build_forum().build())

        fetcher = build_forum().build()
        del fetcher.responses[categories_url(BASE_URL)]
        _, summary = run_crawl(store, fetcher, full_crawl=True)

        assert store.find_forum(BASE_URL).categories_crawled is True
        assert summary.pages_fetched == 2
        assert summary.topics_collected == 3


class TestAbort:
    def test_fresh_forum_without_categories_aborts(self, store):
        with pytest.raises(CrawlAbortedError):
            run_crawl(store, FakeFetcher())
        assert store.find_forum(BASE_URL).categories_crawled is False

    def test_malformed_categories_aborts(self, store):
        fetcher = FakeFetcher({categories_url(BASE_URL): {"unexpected": []}})
        with pytest.raises(CrawlAbortedError):
            run_crawl(store, fetcher)
