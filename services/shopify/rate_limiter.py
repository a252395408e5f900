"""
Shopify API rate limiter.

Token bucket sized to stay under Shopify's leaky bucket (40 requests of
capacity refilling at 2/second) with a safety buffer.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from settings import (
    SHOPIFY_BUCKET_BUFFER,
    SHOPIFY_BUCKET_SIZE,
    SHOPIFY_MAX_REQUESTS_PER_SECOND,
)

logger = logging.getLogger(__name__)


class ShopifyRateLimiter:
    """Async token bucket; ``acquire`` waits for a token instead of failing fast."""

    def __init__(
        self,
        max_requests_per_second: float = SHOPIFY_MAX_REQUESTS_PER_SECOND,
        bucket_size: int = SHOPIFY_BUCKET_SIZE,
        buffer_percent: float = SHOPIFY_BUCKET_BUFFER,
        max_wait_seconds: float = 30.0,
    ) -> None:
        self.max_requests_per_second = max_requests_per_second
        self.effective_bucket_size = max(1, int(bucket_size * (1 - buffer_percent)))
        self.max_wait_seconds = max_wait_seconds
        self._tokens = float(self.effective_bucket_size)
        self._last_refill = time.monotonic()
        self._lock: Optional[asyncio.Lock] = None

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self.effective_bucket_size),
            self._tokens + elapsed * self.max_requests_per_second,
        )
        self._last_refill = now

    def _wait_time(self) -> float:
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.max_requests_per_second

    def status(self) -> Dict[str, Any]:
        self._refill()
        return {
            "availableTokens": int(self._tokens),
            "maxTokens": self.effective_bucket_size,
            "isThrottled": self._tokens < 1,
            "waitTimeMs": int(self._wait_time() * 1000),
            "utilizationPercent": round(
                (self.effective_bucket_size - self._tokens) / self.effective_bucket_size * 100
            ),
        }

    async def acquire(self) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            self._refill()
            wait = self._wait_time()
            if wait > self.max_wait_seconds:
                raise TimeoutError(f"Rate limiter timeout: next token in {wait:.1f}s")
            if wait > 0:
                logger.debug("Shopify rate limiter throttled; waiting %.2fs", wait)
                await asyncio.sleep(wait)
                self._refill()
            self._tokens = max(0.0, self._tokens - 1)

    def update_from_throttle_status(self, throttle_status: Optional[Dict[str, Any]]) -> None:
        """Shrink the local bucket when Shopify reports less capacity than we think we have."""
        if not throttle_status:
            return
        try:
            available = float(throttle_status["currentlyAvailable"])
            maximum = float(throttle_status["maximumAvailable"])
        except (KeyError, TypeError, ValueError):
            return
        if maximum <= 0:
            return
        self._refill()
        self._tokens = min(self._tokens, self.effective_bucket_size * available / maximum)
