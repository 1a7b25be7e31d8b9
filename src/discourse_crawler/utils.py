"""
Utility functions for the Discourse crawler.

This module provides helpers for building the remote endpoint URLs,
normalising dates, and serialising raw JSON snapshots.
"""

from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Union
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import orjson

# Number of post identifiers requested per posts.json call
POST_BATCH_SIZE = 20


# -------------------------------------------------------
# DATES
# -------------------------------------------------------

def to_utc_naive(value: Union[date, datetime]) -> datetime:
    """
    Normalise a date or datetime to a naive UTC datetime.

    SQLite drops timezone information, so everything the crawler stores or
    compares is kept as naive UTC.

    Example:
        to_utc_naive(date(2023, 6, 1))
        # Returns: datetime(2023, 6, 1, 0, 0)
    """
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_date(date_str: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 date string to a naive UTC datetime.

    Args:
        date_str: ISO 8601 formatted date string (e.g., "2024-01-15T10:30:00.000Z")

    Returns:
        datetime object, or None if date_str is None or invalid
    """
    if not date_str or not isinstance(date_str, str):
        return None

    try:
        if date_str.endswith('Z'):
            date_str = date_str[:-1] + '+00:00'
        return to_utc_naive(datetime.fromisoformat(date_str))
    except ValueError:
        return None


def format_since(value: datetime) -> str:
    """Format a cutoff the way the ``after`` listing filter expects (YYYY-MM-DD)."""
    return value.strftime('%Y-%m-%d')


# -------------------------------------------------------
# JSON SNAPSHOTS
# -------------------------------------------------------

def dump_json(data: Any) -> str:
    """Serialise a fetched document for storage as text."""
    return orjson.dumps(data).decode('utf-8')


def load_json(text: Optional[str]) -> Any:
    """Inverse of ``dump_json``; None stays None."""
    if text is None:
        return None
    return orjson.loads(text)


# -------------------------------------------------------
# ENDPOINT URLS
# -------------------------------------------------------
# All endpoints are resolved relative to the forum base URL, which is
# normalised so that a sub-path install ("https://x.org/forum") keeps its
# prefix when joined.
# -------------------------------------------------------

def normalize_base_url(url: str) -> str:
    """
    Normalise a forum base URL so relative endpoints join beneath it.

    Example:
        normalize_base_url("https://meta.example.org/forum")
        # Returns: "https://meta.example.org/forum/"
    """
    parts = urlsplit(url.strip())
    path = parts.path
    if not path.endswith('/'):
        path += '/'
    return urlunsplit((parts.scheme, parts.netloc, path, '', ''))


def _set_query_param(url: str, key: str, value: str, overwrite: bool = True) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(k == key for k, _ in query):
        if not overwrite:
            return url
        query = [(k, v) for k, v in query if k != key]
    query.append((key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def categories_url(base_url: str) -> str:
    return urljoin(base_url, 'categories.json')


def category_page_url(base_url: str, category_id: int, since: Optional[datetime] = None) -> str:
    """URL of page 0 of a category's topic listing, optionally time-bounded."""
    url = urljoin(base_url, f'c/{category_id}.json') + '?page=0'
    if since is not None:
        url = _set_query_param(url, 'after', format_since(since))
    return url


def cursor_page_url(base_url: str, more_topics_url: str, since: Optional[datetime] = None) -> str:
    """
    Turn a server-supplied ``more_topics_url`` into its JSON-returning URL.

    The cursor points at the HTML listing ("/c/general/4?page=1"); inserting
    ``.json`` before the query string yields the JSON variant. The ``after``
    filter is re-appended only when the cursor does not already carry one.

    Example:
        cursor_page_url("https://x.org/", "/c/general/4?page=1")
        # Returns: "https://x.org/c/general/4.json?page=1"
    """
    parts = urlsplit(more_topics_url)
    path = parts.path
    if not path.endswith('.json'):
        path += '.json'
    url = urljoin(base_url, urlunsplit((parts.scheme, parts.netloc, path, parts.query, '')))
    if since is not None:
        url = _set_query_param(url, 'after', format_since(since), overwrite=False)
    return url


def topic_url(base_url: str, topic_id: int) -> str:
    return urljoin(base_url, f't/{topic_id}.json')


def topic_posts_url(base_url: str, topic_id: int, post_ids: Iterable[int]) -> str:
    """URL of the batch-posts endpoint for the given post identifiers."""
    query = [('post_ids[]', str(pid)) for pid in post_ids]
    query.append(('include_suggested', 'true'))
    return urljoin(base_url, f't/{topic_id}/posts.json') + '?' + urlencode(query)
