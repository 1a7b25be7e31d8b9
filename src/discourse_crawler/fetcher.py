"""
Rate-limited JSON fetcher.

Every request the crawler makes to the remote forum goes through
``RateLimitedFetcher.fetch``. Two limits apply to each request:

1. **Admission**: a token bucket decides whether the request may go out
   at all. A denial is a throttling signal: the fetcher waits for the
   cool-off the bucket reports and tries again, up to a fixed budget.
2. **Pacing**: once admitted, the fetcher sleeps the configured flat
   delay before issuing the request.

Transport failures (non-2xx, network errors) are not retried here; they
surface immediately as ``FetchError`` so the caller decides what a
failure means for the entity being crawled.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
import orjson

from .errors import FetchError, MalformedResponseError
from .models import DEFAULT_RATE_LIMIT_MS
from .telemetry import RateLimitDenied, ResponseStats, TokenBucket

logger = logging.getLogger(__name__)

# Retries granted to a request the token bucket keeps refusing
MAX_RETRIES = 3

# Wait used when a denial does not say how long to back off
DEFAULT_COOLDOWN = 60.0

REQUEST_TIMEOUT = 30.0

DEFAULT_HEADERS = {
    'User-Agent': 'discourse-crawler/1.0 (+https://pypi.org/project/discourse-crawler/)',
    'Accept': 'application/json',
}


class RateLimitedFetcher:
    """
    Fetch JSON documents one at a time under a token bucket and a flat delay.

    Usage:
        async with RateLimitedFetcher(rate_limit_ms=500) as fetcher:
            data = await fetcher.fetch("https://meta.example.org/categories.json")
    """

    def __init__(
        self,
        rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS,
        max_retries: int = MAX_RETRIES,
        bucket: Optional[TokenBucket] = None,
        client: Optional[httpx.AsyncClient] = None,
        stats: Optional[ResponseStats] = None,
    ):
        """
        Args:
            rate_limit_ms: Flat delay before every request, in milliseconds
            max_retries: Retries after a throttling denial before giving up
            bucket: Admission limiter; defaults to one sized from rate_limit_ms
            client: HTTP client to use; the fetcher only closes clients it created
            stats: Telemetry sink, shared with the crawler for its summary
        """
        self.delay = max(rate_limit_ms or 0, 0) / 1000.0
        self.max_retries = max_retries
        self.bucket = bucket or TokenBucket.for_delay(rate_limit_ms)
        self.stats = stats or ResponseStats()
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=REQUEST_TIMEOUT,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._own_client:
            await self.client.aclose()

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    async def _admit(self, url: str):
        """Wait until the token bucket admits a request for ``url``."""
        retries_left = self.max_retries

        while True:
            try:
                self.bucket.consume()
                return
            except RateLimitDenied as e:
                self.stats.record_throttled()
                if retries_left <= 0:
                    logger.error("Rate limit retries exhausted for %s (%d retries used)",
                                 url, self.max_retries)
                    self.stats.record_failure("Rate limit retries exhausted")
                    raise FetchError(
                        f"Rate limit retries exhausted for {url}: {e}",
                        url=url,
                        details={'retries': self.max_retries},
                    ) from e

                wait_time = e.retry_after if e.retry_after is not None else DEFAULT_COOLDOWN
                logger.warning("Rate limit reached for %s. Waiting %.1fs before retrying "
                               "(%d retries left)", url, wait_time, retries_left)
                await self._sleep(wait_time)
                retries_left -= 1

    async def fetch(self, url: str) -> Any:
        """
        Fetch ``url`` and return its decoded JSON body.

        Raises:
            FetchError: non-2xx status, network failure, or the token
                        bucket kept refusing the request
            MalformedResponseError: the body is not valid JSON
        """
        await self._admit(url)

        if self.delay > 0:
            await self._sleep(self.delay)

        logger.debug("GET %s", url)
        try:
            response = await self.client.get(url)
            self.stats.record_response(response.status_code)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("HTTP error fetching %s: %d %s", url, status, e.response.reason_phrase)
            self.stats.record_failure(f"HTTP {status}")
            raise FetchError(
                f"Failed to fetch {url}: HTTP {status}",
                url=url,
                details={'status_code': status},
            ) from e
        except httpx.RequestError as e:
            logger.error("Request error fetching %s: %s", url, e)
            self.stats.record_failure(f"Request error: {type(e).__name__}")
            raise FetchError(f"Failed to fetch {url}: {e}", url=url) from e

        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            logger.error("Response from %s is not valid JSON: %s", url, e)
            raise MalformedResponseError(f"Response from {url} is not valid JSON", url=url) from e

    get = fetch
