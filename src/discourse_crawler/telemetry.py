"""
Request admission and response telemetry for the Discourse crawler.

This module implements:
- A token bucket admission check that denies (rather than delays) a
  request once the burst budget is spent, blocking further admissions
  for a cool-off period
- Response classification counters (2xx/3xx/4xx/5xx), throttle denials
  and exhausted fetches
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional


class RateLimitDenied(Exception):
    """
    Raised by ``TokenBucket.consume`` when a request is not admitted.

    Attributes:
        retry_after: Seconds the bucket asks the caller to wait, or None
                     when it cannot tell
    """

    def __init__(self, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        if retry_after is None:
            message = "Rate limit reached"
        else:
            message = f"Rate limit reached, retry after {retry_after:.2f}s"
        super().__init__(message)


class TokenBucket:
    """
    Token bucket admission limiter.

    The bucket fills at ``tokens_per_second`` up to ``capacity`` and each
    admitted request consumes one token. When the bucket is empty the
    request is denied with ``RateLimitDenied``; if ``block_duration`` is
    set the bucket then refuses everything for that many seconds, and the
    denial reports the remaining block time as ``retry_after``.
    """

    def __init__(
        self,
        tokens_per_second: float = 3.0,
        capacity: int = 3,
        block_duration: Optional[float] = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            tokens_per_second: Rate at which tokens are added to bucket
            capacity: Maximum number of tokens bucket can hold
            block_duration: Seconds to refuse admissions after a denial,
                            None to only wait for the next token
            clock: Monotonic time source
        """
        self.tokens_per_second = tokens_per_second
        self.capacity = capacity
        self.block_duration = block_duration
        self._clock = clock
        self.tokens = float(capacity)
        self.last_update = clock()
        self.blocked_until = 0.0

    def _refill(self, now: float):
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = now

    def consume(self, tokens: int = 1) -> None:
        """
        Admit one request or raise ``RateLimitDenied``.

        Args:
            tokens: Number of tokens to consume
        """
        now = self._clock()
        if now < self.blocked_until:
            raise RateLimitDenied(self.blocked_until - now)

        self._refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return

        if self.block_duration is not None:
            self.blocked_until = now + self.block_duration
            raise RateLimitDenied(self.block_duration)

        tokens_needed = tokens - self.tokens
        raise RateLimitDenied(tokens_needed / self.tokens_per_second)

    @classmethod
    def for_delay(cls, rate_limit_ms: int, block_duration: Optional[float] = 60.0) -> "TokenBucket":
        """
        Build a bucket whose per-second budget matches a per-request delay.

        Example:
            TokenBucket.for_delay(500)  # 2 requests per second, burst of 2
        """
        if rate_limit_ms and rate_limit_ms > 0:
            points = max(1, round(1000 / rate_limit_ms))
        else:
            points = 3
        return cls(tokens_per_second=points, capacity=points, block_duration=block_duration)


@dataclass
class ResponseStats:
    """
    Statistics for HTTP response tracking.

    Tracks response counts by status code category and specific codes
    for monitoring crawler health.
    """
    success_2xx: int = 0
    redirect_3xx: int = 0
    client_error_4xx: int = 0
    server_error_5xx: int = 0

    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    throttled: int = 0
    fetch_failed: int = 0
    failure_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_response(self, status_code: int):
        """Record a received HTTP response."""
        self.status_codes[status_code] += 1

        if 200 <= status_code < 300:
            self.success_2xx += 1
        elif 300 <= status_code < 400:
            self.redirect_3xx += 1
        elif 400 <= status_code < 500:
            self.client_error_4xx += 1
        elif 500 <= status_code < 600:
            self.server_error_5xx += 1

    def record_throttled(self):
        """Record a request the token bucket refused to admit."""
        self.throttled += 1

    def record_failure(self, reason: str):
        """Record a fetch that ended in ``FetchError``."""
        self.fetch_failed += 1
        self.failure_reasons[reason] += 1

    @property
    def total(self) -> int:
        return self.success_2xx + self.redirect_3xx + self.client_error_4xx + self.server_error_5xx

    def get_summary(self) -> str:
        """
        Get a human-readable summary of response statistics.

        Returns:
            Formatted string with key statistics
        """
        summary = [
            f"Total Responses: {self.total}",
            f"  Success (2xx): {self.success_2xx}",
            f"  Redirect (3xx): {self.redirect_3xx}",
            f"  Client Error (4xx): {self.client_error_4xx}",
            f"  Server Error (5xx): {self.server_error_5xx}",
        ]

        if self.throttled > 0:
            summary.append(f"Throttled: {self.throttled}")

        if self.fetch_failed > 0:
            summary.append(f"Failed Fetches: {self.fetch_failed}")
            for reason, count in self.failure_reasons.items():
                summary.append(f"  {reason}: {count}")

        return "\n".join(summary)
