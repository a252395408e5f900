"""
Centralized configuration helpers for shop scoping and remote integrations.
"""
from __future__ import annotations

import os
from typing import Optional, Any

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SHOP_ID: str = os.getenv("DEFAULT_SHOP_ID") or "demo-shop"

# Shopify Admin GraphQL
SHOPIFY_ACCESS_TOKEN: Optional[str] = os.getenv("SHOPIFY_ACCESS_TOKEN")
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")
SHOPIFY_REQUEST_TIMEOUT: float = float(os.getenv("SHOPIFY_REQUEST_TIMEOUT", "15"))

# Shopify uses a leaky bucket of 40 requests refilling at 2/second.
SHOPIFY_MAX_REQUESTS_PER_SECOND: float = float(os.getenv("SHOPIFY_MAX_REQUESTS_PER_SECOND", "2"))
SHOPIFY_BUCKET_SIZE: int = int(os.getenv("SHOPIFY_BUCKET_SIZE", "40"))
SHOPIFY_BUCKET_BUFFER: float = float(os.getenv("SHOPIFY_BUCKET_BUFFER", "0.2"))

# Metaobject definition type that holds canonical bundle records.
BUNDLE_METAOBJECT_TYPE: str = os.getenv("BUNDLE_METAOBJECT_TYPE", "product-bundles")

# A/B testing
AB_ASSIGNMENT_TTL_DAYS: int = int(os.getenv("AB_ASSIGNMENT_TTL_DAYS", "7"))


def sanitize_shop_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw IDs (strip whitespace, lower-case domains)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    text = str(value).strip()
    if not text:
        return None
    return text.lower()


def resolve_shop_id(*candidates: Optional[Any]) -> str:
    """
    Pick the first usable shop identifier from candidates, otherwise fall back to DEFAULT_SHOP_ID.
    """
    for candidate in candidates:
        normalized = sanitize_shop_id(candidate)
        if normalized:
            return normalized
    return DEFAULT_SHOP_ID
