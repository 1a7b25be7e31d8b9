"""
Data models for the Discourse crawler.

This module defines the plain dataclasses shared by the crawl engine. The
persisted entities themselves live in ``state_manager`` as SQLAlchemy
tables; the types here describe run configuration and the edit metadata
carried inside a post's raw JSON snapshot.
"""

from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

from .utils import parse_iso_date, to_utc_naive

DEFAULT_RATE_LIMIT_MS = 500


@dataclass
class CrawlerOptions:
    """
    Options controlling a single crawl run.

    Attributes:
        full_crawl: Ignore every local "already crawled" flag and re-walk
                    the whole hierarchy
        since_date: Cutoff used both as the ``after`` filter on listing
                    requests and to force re-visits of topics last crawled
                    before it. Stored as naive UTC.
        rate_limit_ms: Flat delay applied before every request, in
                       milliseconds

    Example:
        options = CrawlerOptions(full_crawl=False, since_date=date(2023, 6, 1))
    """
    full_crawl: bool = False
    since_date: Optional[Union[date, datetime]] = None
    rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS

    def __post_init__(self):
        if self.since_date is not None:
            self.since_date = to_utc_naive(self.since_date)
        if self.rate_limit_ms is None or self.rate_limit_ms < 0:
            self.rate_limit_ms = DEFAULT_RATE_LIMIT_MS

    def to_dict(self) -> dict:
        """Convert the options to a dictionary for logging."""
        return asdict(self)


@dataclass
class PostSnapshot:
    """
    Edit metadata extracted from a post's raw JSON.

    Discourse bumps ``version`` on every edit and stamps ``updated_at``.
    Either can be missing from older or partial payloads.

    Attributes:
        post_id: Remote post identifier
        version: Edit version number, None when absent
        updated_at: Edit timestamp as naive UTC, None when absent
    """
    post_id: Optional[int] = None
    version: Optional[int] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PostSnapshot":
        version = data.get("version")
        try:
            version = int(version) if version is not None else None
        except (TypeError, ValueError):
            version = None
        return cls(
            post_id=data.get("id"),
            version=version,
            updated_at=parse_iso_date(data.get("updated_at")),
        )

    def is_newer_than(self, stored: "PostSnapshot") -> bool:
        """
        Decide whether this (incoming) snapshot should replace ``stored``.

        The incoming post wins when its version is strictly greater, or
        when both sides carry an edit timestamp and the incoming one is
        later. Anything else keeps the stored copy.

        Example:
            PostSnapshot(version=3).is_newer_than(PostSnapshot(version=2))  # True
            PostSnapshot(version=1).is_newer_than(PostSnapshot(version=2))  # False
        """
        if self.version is not None and stored.version is not None:
            if self.version > stored.version:
                return True
        elif self.version is not None and stored.version is None:
            return True

        if self.updated_at is not None and stored.updated_at is not None:
            return self.updated_at > stored.updated_at

        return False


@dataclass
class CrawlSummary:
    """Counters accumulated over one crawl run, logged when it ends."""
    categories_discovered: int = 0
    categories_walked: int = 0
    categories_skipped: int = 0
    categories_failed: int = 0
    pages_fetched: int = 0
    topics_discovered: int = 0
    topics_collected: int = 0
    topics_skipped: int = 0
    topics_failed: int = 0
    posts_created: int = 0
    posts_updated: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    def get_summary(self) -> str:
        return (
            f"categories: {self.categories_walked} walked, {self.categories_skipped} skipped, "
            f"{self.categories_failed} failed | pages: {self.pages_fetched} | "
            f"topics: {self.topics_discovered} discovered, {self.topics_collected} collected, "
            f"{self.topics_skipped} skipped, {self.topics_failed} failed | "
            f"posts: {self.posts_created} created, {self.posts_updated} updated"
        )
