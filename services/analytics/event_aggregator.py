"""
Event Aggregator
================

Folds storefront events into per-variant funnel metrics.

The fold only sums counts; rates are derived when read. Summing is
associative and commutative, so partial folds computed at different times or
on different replicas merge into exactly the result of one full scan.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from services.storage import StorageService, storage as default_storage
from settings import resolve_shop_id

EVENT_TYPES = ("impression", "click", "add_to_cart", "purchase")
UNKNOWN_VARIANT = "unknown"


@dataclass(frozen=True)
class EventRecord:
    """The part of an AnalyticsEvent the fold looks at."""
    event_type: str
    variant_group_id: Optional[str] = None
    product_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "EventRecord":
        return cls(
            event_type=row.event_type,
            variant_group_id=row.variant_group_id,
            product_id=row.product_id,
        )


@dataclass(frozen=True)
class VariantCounts:
    impressions: int = 0
    clicks: int = 0
    add_to_carts: int = 0
    purchases: int = 0

    def __add__(self, other: "VariantCounts") -> "VariantCounts":
        return VariantCounts(
            impressions=self.impressions + other.impressions,
            clicks=self.clicks + other.clicks,
            add_to_carts=self.add_to_carts + other.add_to_carts,
            purchases=self.purchases + other.purchases,
        )

    @classmethod
    def of(cls, event_type: str) -> "VariantCounts":
        if event_type == "impression":
            return cls(impressions=1)
        if event_type == "click":
            return cls(clicks=1)
        if event_type == "add_to_cart":
            return cls(add_to_carts=1)
        if event_type == "purchase":
            return cls(purchases=1)
        return cls()

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions if self.impressions else 0.0

    @property
    def conversion_rate(self) -> float:
        return self.purchases / self.impressions if self.impressions else 0.0

    def to_dict(self, variant_group_id: str) -> Dict[str, Any]:
        return {
            "variantGroupId": variant_group_id,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "addToCarts": self.add_to_carts,
            "purchases": self.purchases,
            "ctr": self.ctr,
            "conversionRate": self.conversion_rate,
        }


def merge_metrics(
    left: Mapping[str, VariantCounts], right: Mapping[str, VariantCounts]
) -> Dict[str, VariantCounts]:
    """Combine two partial folds."""
    merged = dict(left)
    for variant, counts in right.items():
        merged[variant] = merged.get(variant, VariantCounts()) + counts
    return merged


def fold_events(events: Iterable[EventRecord]) -> Dict[str, VariantCounts]:
    """Group events by variant and count each funnel step."""
    metrics: Dict[str, VariantCounts] = {}
    for event in events:
        variant = event.variant_group_id or UNKNOWN_VARIANT
        metrics[variant] = metrics.get(variant, VariantCounts()) + VariantCounts.of(event.event_type)
    return metrics


def metrics_report(metrics: Mapping[str, VariantCounts]) -> List[Dict[str, Any]]:
    return [metrics[variant].to_dict(variant) for variant in sorted(metrics)]


async def aggregate(
    shop: Optional[str],
    product_id: Optional[str] = None,
    storage: Optional[StorageService] = None,
) -> Dict[str, Any]:
    """Per-variant metrics for a shop, optionally restricted to one product."""
    storage = storage or default_storage
    rows = await storage.get_events(resolve_shop_id(shop), product_id=product_id)
    metrics = fold_events(EventRecord.from_row(row) for row in rows)
    return {"analytics": metrics_report(metrics), "totalEvents": len(rows)}
