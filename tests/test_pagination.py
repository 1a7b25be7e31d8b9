"""Tests for category listing pagination."""

import asyncio
from datetime import datetime

import pytest

from discourse_crawler.errors import FetchError, MalformedResponseError
from discourse_crawler.models import CrawlerOptions
from discourse_crawler.pagination import PaginationWalker
from discourse_crawler.utils import category_page_url, cursor_page_url

from forum_builder import BASE_URL, FakeFetcher, ForumBuilder, make_listing, make_topic_excerpt


@pytest.fixture
def category(store):
    forum = store.create_forum(BASE_URL, categories_crawled=True)
    return store.create_category(forum.id, 4, "/t/about/4", {"id": 4})


def walk(store, fetcher, category, **option_kwargs):
    walker = PaginationWalker(store, fetcher, BASE_URL, CrawlerOptions(**option_kwargs))
    pages = asyncio.run(walker.walk(category))
    return walker, pages


class TestWalk:
    def test_follows_cursor_to_last_page(self, store, category):
        fetcher = ForumBuilder().with_category(4, pages=[[101, 102], [103]]).build()
        walker, pages = walk(store, fetcher, category)

        assert pages == 2
        assert fetcher.calls == [
            "https://forum.example.org/c/4.json?page=0",
            "https://forum.example.org/c/cat-4/4.json?page=1",
        ]
        assert store.count_pages(category.id) == 2
        assert [t.remote_id for t in store.get_topics_by_category(category.id)] == [103, 102, 101]
        assert store.get_category(category.id).pages_crawled is True
        assert walker.summary.pages_fetched == 2
        assert walker.summary.topics_discovered == 3

    def test_topics_keep_listing_created_at(self, store, category):
        fetcher = ForumBuilder().with_category(
            4, pages=[[101]], created_at="2023-04-02T08:00:00.000Z"
        ).build()
        walk(store, fetcher, category)
        assert store.find_topic(category.id, 101).created_at == datetime(2023, 4, 2, 8, 0)

    def test_resumes_after_last_stored_page(self, store, category):
        store.create_page(category.id, 0, "/c/cat-4/4?page=1", make_listing([], "/c/cat-4/4?page=1"))
        url = cursor_page_url(BASE_URL, "/c/cat-4/4?page=1")
        fetcher = FakeFetcher({url: make_listing([make_topic_excerpt(103)])})

        _, pages = walk(store, fetcher, category)

        assert pages == 1
        assert fetcher.calls == [url]
        assert store.get_last_page(category.id).page_number == 1
        assert store.get_category(category.id).pages_crawled is True

    def test_already_complete_listing_fetches_nothing(self, store, category):
        store.create_page(category.id, 0, None, make_listing([]))
        fetcher = FakeFetcher()

        _, pages = walk(store, fetcher, category)

        assert pages == 0
        assert fetcher.calls == []
        assert store.get_category(category.id).pages_crawled is True

    def test_since_date_applied_to_every_page(self, store, category):
        cutoff = datetime(2023, 6, 1)
        fetcher = ForumBuilder().with_category(4, pages=[[101], [102], [103]], since=cutoff).build()

        _, pages = walk(store, fetcher, category, since_date=cutoff)

        assert pages == 3
        assert all(url.count("after=2023-06-01") == 1 for url in fetcher.calls)

    def test_existing_topics_not_duplicated(self, store, category):
        store.create_topic(category.id, 101, {"id": 101, "title": "seen before"})
        fetcher = ForumBuilder().with_category(4, pages=[[101, 102]]).build()

        walker, _ = walk(store, fetcher, category)

        assert len(store.get_topics_by_category(category.id)) == 2
        assert walker.summary.topics_discovered == 1

    def test_full_crawl_restarts_at_first_page(self, store, category):
        store.create_page(category.id, 0, None, make_listing([make_topic_excerpt(101)]))
        fetcher = ForumBuilder().with_category(4, pages=[[101, 102], [103]]).build()

        _, pages = walk(store, fetcher, category, full_crawl=True)

        assert pages == 2
        assert fetcher.calls[0] == category_page_url(BASE_URL, 4)
        first = store.get_last_page(category.id)
        assert first.page_number == 1
        assert store.count_pages(category.id) == 2


class TestWalkFailures:
    def test_malformed_listing(self, store, category):
        fetcher = FakeFetcher({category_page_url(BASE_URL, 4): {"topic_list": {}}})

        with pytest.raises(MalformedResponseError):
            walk(store, fetcher, category)

        assert store.count_pages(category.id) == 0
        assert store.get_category(category.id).pages_crawled is False

    def test_failure_mid_walk_keeps_earlier_pages(self, store, category):
        first_url = category_page_url(BASE_URL, 4)
        fetcher = FakeFetcher({first_url: make_listing([make_topic_excerpt(101)], "/c/cat-4/4?page=1")})

        with pytest.raises(FetchError):
            walk(store, fetcher, category)

        assert store.count_pages(category.id) == 1
        assert store.find_topic(category.id, 101) is not None
        assert store.get_category(category.id).pages_crawled is False

        second_url = cursor_page_url(BASE_URL, "/c/cat-4/4?page=1")
        retry = FakeFetcher({second_url: make_listing([make_topic_excerpt(102)])})
        _, pages = walk(store, retry, category)

        assert pages == 1
        assert retry.calls == [second_url]
        assert store.get_category(category.id).pages_crawled is True


class TestEffectiveCutoff:
    def _newer_sibling(self, store, category):
        """A finished sibling category holding a topic newer than anything in ``category``."""
        sibling = store.create_category(category.forum_id, 7, None, {"id": 7}, pages_crawled=True)
        store.create_topic(sibling.id, 900, {}, created_at=datetime(2024, 6, 1))
        return sibling

    def test_since_date_wins(self, store, category):
        store.create_topic(category.id, 1, {}, created_at=datetime(2024, 1, 1))
        walker = PaginationWalker(store, FakeFetcher(), BASE_URL,
                                  CrawlerOptions(since_date=datetime(2023, 1, 1)))
        assert walker.effective_cutoff(category) == datetime(2023, 1, 1)

    def test_unfinished_category_unbounded(self, store, category):
        self._newer_sibling(store, category)
        store.create_topic(category.id, 1, {}, created_at=datetime(2023, 3, 1))
        walker = PaginationWalker(store, FakeFetcher(), BASE_URL, CrawlerOptions())
        assert walker.effective_cutoff(category) is None

    def test_finished_category_uses_its_own_latest_topic(self, store, category):
        self._newer_sibling(store, category)
        store.create_topic(category.id, 1, {}, created_at=datetime(2023, 3, 1))
        store.create_topic(category.id, 2, {}, created_at=datetime(2023, 8, 1))
        store.update_category(category.id, pages_crawled=True)
        walker = PaginationWalker(store, FakeFetcher(), BASE_URL, CrawlerOptions())
        assert walker.effective_cutoff(store.get_category(category.id)) == datetime(2023, 8, 1)

    def test_full_crawl_unbounded(self, store, category):
        store.create_topic(category.id, 1, {}, created_at=datetime(2023, 3, 1))
        store.update_category(category.id, pages_crawled=True)
        walker = PaginationWalker(store, FakeFetcher(), BASE_URL, CrawlerOptions(full_crawl=True))
        assert walker.effective_cutoff(store.get_category(category.id)) is None

    def test_resumed_walk_not_bounded_by_sibling_topics(self, store, category):
        self._newer_sibling(store, category)
        store.create_page(category.id, 0, "/c/cat-4/4?page=1",
                          make_listing([make_topic_excerpt(101)], "/c/cat-4/4?page=1"))
        url = cursor_page_url(BASE_URL, "/c/cat-4/4?page=1")
        fetcher = FakeFetcher({url: make_listing([make_topic_excerpt(102, "2022-01-01T00:00:00.000Z")])})

        walk(store, fetcher, category)

        assert fetcher.calls == ["https://forum.example.org/c/cat-4/4.json?page=1"]
        assert store.find_topic(category.id, 102) is not None
