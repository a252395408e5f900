"""
Auto-bundle rule criteria.

A rule selects catalog products by collection membership, tag membership and
price range, and turns the matches into one generated bundle.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.errors import ValidationError


@dataclass
class RuleCriteria:
    name: str
    collections: List[str] = field(default_factory=list)  # empty = every collection
    tags: List[str] = field(default_factory=list)  # empty = any tags
    min_price: float = 0.0
    max_price: float = 0.0  # 0 = unbounded
    min_products: int = 2
    discount_percent: float = 10.0

    def summary(self) -> Dict[str, Any]:
        return {
            "collections": ", ".join(self.collections) if self.collections else "All collections",
            "tags": ", ".join(self.tags) if self.tags else "All tags",
            "priceRange": f"{self.min_price:g} - {self.max_price:g}" if self.max_price else f"{self.min_price:g} - ∞",
            "minProducts": self.min_products,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "collections": list(self.collections),
            "tags": list(self.tags),
            "minPrice": self.min_price,
            "maxPrice": self.max_price,
            "minProducts": self.min_products,
            "discountPercent": self.discount_percent,
        }


def _as_list(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value if str(v).strip()]


def _as_number(value: Any, label: str, default: float, errors: List[str]) -> float:
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors.append(f"{label} must be a number, got {value!r}")
        return default
    if not math.isfinite(number):
        errors.append(f"{label} must be a finite number, got {value!r}")
        return default
    return number


def parse_rule_criteria(data: Any, require_name: bool = True) -> RuleCriteria:
    """Validate a rule payload (camelCase from the admin UI, snake_case internally)."""
    if not isinstance(data, dict):
        raise ValidationError(["Rule payload must be an object"])

    errors: List[str] = []
    name = str(data.get("name") or "").strip()
    if require_name and not name:
        errors.append("Rule name is required")

    min_price = _as_number(data.get("minPrice", data.get("min_price")), "minPrice", 0.0, errors)
    max_price = _as_number(data.get("maxPrice", data.get("max_price")), "maxPrice", 0.0, errors)
    min_products = _as_number(data.get("minProducts", data.get("min_products")), "minProducts", 2, errors)
    percent = _as_number(
        data.get("discountPercent", data.get("discount_percent", data.get("discount"))),
        "discountPercent",
        10.0,
        errors,
    )

    if min_price < 0 or max_price < 0:
        errors.append("Price bounds must not be negative")
    if max_price and max_price < min_price:
        errors.append("maxPrice must be 0 (unbounded) or at least minPrice")
    if min_products < 1 or int(min_products) != min_products:
        errors.append("minProducts must be a positive integer")
    if not 0 <= percent <= 100:
        errors.append("Discount must be between 0 and 100")

    if errors:
        raise ValidationError(errors, payload={"name": name or None})

    return RuleCriteria(
        name=name,
        collections=_as_list(data.get("collections")),
        tags=_as_list(data.get("tags")),
        min_price=min_price,
        max_price=max_price,
        min_products=int(min_products),
        discount_percent=percent,
    )


def criteria_from_rule(rule: Any) -> RuleCriteria:
    """Rebuild criteria from a stored AutoBundleRule row."""
    return RuleCriteria(
        name=rule.name,
        collections=list(rule.collections or []),
        tags=list(rule.tags or []),
        min_price=float(rule.min_price or 0),
        max_price=float(rule.max_price or 0),
        min_products=int(rule.min_products or 2),
        discount_percent=float(rule.discount_percent or 0),
    )


def rule_to_dict(rule: Any, generated: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = criteria_from_rule(rule).to_dict()
    payload.update({
        "id": rule.id,
        "shop": rule.shop,
        "isActive": bool(rule.is_active),
        "bundleId": rule.bundle_id,
        "createdAt": rule.created_at.isoformat() if rule.created_at is not None else None,
    })
    if generated:
        payload.update(generated)
    return payload
