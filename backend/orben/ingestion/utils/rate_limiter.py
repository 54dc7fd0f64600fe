"""Per-host token buckets shared by every fetcher."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional


class TokenBucket:
    """Starts full, refills at ``rate`` tokens per second up to ``capacity``."""

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> float:
        """Take tokens, sleeping until they are available.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return waited
                delay = (tokens - self.tokens) / self.rate
                waited += delay
                await self._sleep(delay)


def _host(domain: str) -> str:
    domain = domain.lower().split(":", 1)[0]
    return domain[4:] if domain.startswith("www.") else domain


class DomainRateLimiter:
    """One token bucket per host, keyed without the ``www.`` prefix.

    Sources on the same host share a bucket, so two feeds from one
    publisher never double the request rate against it. A source may
    set ``rate_limit_rpm`` in its config to override its host's rate.
    """

    # Requests per minute for known feed and API hosts
    DOMAIN_LIMITS_RPM = {
        "slickdeals.net": 20,
        "feeds.feedburner.com": 30,
        "dealnews.com": 20,
        "bensbargains.com": 20,
        "api.woot.com": 30,
        "api.bestbuy.com": 60,
    }

    DEFAULT_RPM = 30

    def __init__(
        self,
        limits: Optional[Mapping[str, int]] = None,
        default_rpm: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limits: Dict[str, int] = dict(self.DOMAIN_LIMITS_RPM if limits is None else limits)
        self.default_rpm = default_rpm or self.DEFAULT_RPM
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._rpm: Dict[str, int] = {}

    def _bucket(self, host: str, rpm: int) -> TokenBucket:
        bucket = self._buckets.get(host)
        if bucket is None or self._rpm.get(host) != rpm:
            # Burst of 10% of the per-minute rate, at least 2
            bucket = TokenBucket(
                rate=rpm / 60.0,
                capacity=max(2.0, rpm / 10.0),
                clock=self._clock,
                sleep=self._sleep,
            )
            self._buckets[host] = bucket
            self._rpm[host] = rpm
        return bucket

    def rpm_for(self, domain: str) -> int:
        return self.limits.get(_host(domain), self.default_rpm)

    async def acquire(self, domain: str, rpm: Optional[int] = None) -> float:
        """Block until the host allows another request.

        Args:
            domain: Host (``netloc``) being requested
            rpm: Per-source override of the host's requests per minute

        Returns:
            Seconds spent waiting
        """
        host = _host(domain)
        rate = rpm if rpm and rpm > 0 else self.rpm_for(host)
        return await self._bucket(host, rate).acquire()
