"""
Shopify Admin GraphQL client.

Blocking ``requests`` calls run in a worker thread so the event loop stays
free; every request first takes a token from the shop's rate limiter.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Type

import requests

from services.errors import RemoteError
from services.shopify.rate_limiter import ShopifyRateLimiter
from settings import SHOPIFY_ACCESS_TOKEN, SHOPIFY_API_VERSION, SHOPIFY_REQUEST_TIMEOUT
from utils import retry_async

logger = logging.getLogger(__name__)

# A connect timeout means the request never left, so even mutations may be resent.
_SAFE_TO_RESEND = (requests.ConnectTimeout,)
_TRANSIENT_HTTP = (requests.ConnectionError, requests.Timeout)


class ShopifyGraphQLError(Exception):
    """Transport failure or top-level GraphQL ``errors`` in the response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ShopifyThrottledError(ShopifyGraphQLError):
    def __init__(self, retry_after: float):
        super().__init__(f"Throttled by Shopify, retry after {retry_after}s", status_code=429)
        self.retry_after = retry_after


def user_error_messages(result: Optional[Dict[str, Any]]) -> List[str]:
    """Flatten ``userErrors`` of a mutation payload to plain messages."""
    if not result:
        return []
    messages = []
    for err in result.get("userErrors") or []:
        field = err.get("field")
        message = err.get("message") or "unknown error"
        if field:
            message = f"{'.'.join(str(f) for f in field)}: {message}"
        messages.append(message)
    return messages


class ShopifyGraphQLClient:
    """Per-shop Admin API client."""

    def __init__(
        self,
        shop: str,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        rate_limiter: Optional[ShopifyRateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.shop = shop
        self.access_token = access_token or SHOPIFY_ACCESS_TOKEN
        if not self.access_token:
            raise ValueError("SHOPIFY_ACCESS_TOKEN is required")

        self.api_version = api_version or SHOPIFY_API_VERSION
        self.endpoint = f"https://{shop}/admin/api/{self.api_version}/graphql.json"
        self.headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        self.rate_limiter = rate_limiter or ShopifyRateLimiter()
        self.session = session or requests.Session()
        self.timeout = timeout or SHOPIFY_REQUEST_TIMEOUT

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """
        Run a query or mutation and return its ``data`` object.

        Args:
            query: GraphQL document
            variables: GraphQL variables
            idempotent: False for creates; those are only resent when the
                connection was never established

        Raises:
            ShopifyGraphQLError: non-2xx response or top-level GraphQL errors
            requests.RequestException: network failure after retries
        """
        payload = {"query": query, "variables": variables or {}}
        post = self._post_retrying if idempotent else self._post_guarded

        await self.rate_limiter.acquire()
        try:
            body = await post(payload)
        except ShopifyThrottledError as e:
            logger.warning("Shopify throttled %s; retrying once in %.1fs", self.shop, e.retry_after)
            await asyncio.sleep(e.retry_after)
            await self.rate_limiter.acquire()
            body = await post(payload)

        errors = body.get("errors")
        if errors:
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
            raise ShopifyGraphQLError("; ".join(messages))

        cost = (body.get("extensions") or {}).get("cost") or {}
        self.rate_limiter.update_from_throttle_status(cost.get("throttleStatus"))
        return body.get("data") or {}

    async def mutate(
        self,
        mutation: str,
        variables: Dict[str, Any],
        root: str,
        error_cls: Type[RemoteError],
        resource: str,
        resource_id: Optional[str] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """Run a mutation and return ``data[root]``; any failure becomes ``error_cls``."""
        try:
            data = await self.execute(mutation, variables, idempotent=idempotent)
        except (ShopifyGraphQLError, requests.RequestException, TimeoutError) as e:
            logger.error("Shopify %s failed for %s on %s: %s", root, resource, self.shop, e)
            raise error_cls(resource, resource_id=resource_id, message=str(e)) from e

        result = data.get(root) or {}
        messages = user_error_messages(result)
        if messages:
            logger.error("Shopify %s rejected %s on %s: %s", root, resource, self.shop, messages)
            raise error_cls(resource, messages, resource_id=resource_id)
        return result

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(
            self.endpoint, json=payload, headers=self.headers, timeout=self.timeout
        )
        if response.status_code == 429:
            try:
                retry_after = float(response.headers.get("Retry-After", "2"))
            except ValueError:
                retry_after = 2.0
            raise ShopifyThrottledError(retry_after)
        if response.status_code >= 400:
            raise ShopifyGraphQLError(
                f"Shopify API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    @retry_async(max_retries=3, base_delay=0.5, retry_on=_TRANSIENT_HTTP)
    async def _post_retrying(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post, payload)

    @retry_async(max_retries=3, base_delay=0.5, retry_on=_SAFE_TO_RESEND)
    async def _post_guarded(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post, payload)


_client_cache: Dict[str, ShopifyGraphQLClient] = {}


def get_shopify_client(shop: str) -> ShopifyGraphQLClient:
    """Cached client per shop so each shop keeps a single rate-limit bucket."""
    client = _client_cache.get(shop)
    if client is None:
        client = ShopifyGraphQLClient(shop)
        _client_cache[shop] = client
    return client
