"""
Remote Discount Store: automatic percentage discounts scoped to a product set.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from services.errors import RemoteCreateError, RemoteDeleteError, RemoteUpdateError
from services.shopify.client import ShopifyGraphQLClient
from utils import utcnow

logger = logging.getLogger(__name__)

CREATE_MUTATION = """
mutation CreateBundleDiscount($automaticBasicDiscount: DiscountAutomaticBasicInput!) {
  discountAutomaticBasicCreate(automaticBasicDiscount: $automaticBasicDiscount) {
    automaticDiscountNode { id }
    userErrors { field message code }
  }
}
"""

UPDATE_MUTATION = """
mutation UpdateBundleDiscount($id: ID!, $automaticBasicDiscount: DiscountAutomaticBasicInput!) {
  discountAutomaticBasicUpdate(id: $id, automaticBasicDiscount: $automaticBasicDiscount) {
    automaticDiscountNode { id }
    userErrors { field message code }
  }
}
"""

DELETE_MUTATION = """
mutation DeleteBundleDiscount($id: ID!) {
  discountAutomaticDelete(id: $id) {
    deletedAutomaticDiscountId
    userErrors { field message code }
  }
}
"""


def _now_iso() -> str:
    return utcnow().isoformat() + "Z"


def _percentage(percent: float) -> float:
    # Shopify takes a fraction: 15% -> 0.15
    return round(float(percent) / 100, 4)


class ShopifyDiscountStore:
    resource = "discount"

    def __init__(self, client: ShopifyGraphQLClient):
        self.client = client

    @property
    def shop(self) -> str:
        return self.client.shop

    async def create_discount(
        self,
        title: str,
        product_ids: List[str],
        percent: float,
        min_quantity: int,
        active: bool = True,
    ) -> str:
        """Create an automatic basic discount and return its id."""
        now = _now_iso()
        discount: Dict[str, Any] = {
            "title": title,
            "startsAt": now,
            "minimumRequirement": {
                "quantity": {"greaterThanOrEqualToQuantity": str(min_quantity)}
            },
            "customerGets": {
                "value": {"percentage": _percentage(percent)},
                "items": {"products": {"productsToAdd": list(product_ids)}},
            },
        }
        if not active:
            discount["endsAt"] = now

        result = await self.client.mutate(
            CREATE_MUTATION, {"automaticBasicDiscount": discount},
            "discountAutomaticBasicCreate", RemoteCreateError, self.resource, idempotent=False,
        )
        node = result.get("automaticDiscountNode") or {}
        if not node.get("id"):
            raise RemoteCreateError(self.resource, message="discountAutomaticBasicCreate returned no id")
        logger.info("Created discount %s (%s, %s%%) for %s", node["id"], title, percent, self.shop)
        return node["id"]

    async def update_discount_percentage(self, discount_id: str, percent: float) -> None:
        await self._update(discount_id, {"customerGets": {"value": {"percentage": _percentage(percent)}}})
        logger.info("Updated discount %s to %s%% for %s", discount_id, percent, self.shop)

    async def update_discount_title(self, discount_id: str, title: str) -> None:
        await self._update(discount_id, {"title": title})
        logger.info("Retitled discount %s to %r for %s", discount_id, title, self.shop)

    async def toggle_discount(self, discount_id: str, active: bool) -> None:
        now = _now_iso()
        changes: Dict[str, Optional[str]] = {"startsAt": now, "endsAt": None} if active else {"endsAt": now}
        await self._update(discount_id, changes)
        logger.info("Discount %s %s for %s", discount_id, "activated" if active else "deactivated", self.shop)

    async def delete_discount(self, discount_id: str) -> None:
        await self.client.mutate(
            DELETE_MUTATION, {"id": discount_id}, "discountAutomaticDelete",
            RemoteDeleteError, self.resource, resource_id=discount_id, idempotent=False,
        )
        logger.info("Deleted discount %s for %s", discount_id, self.shop)

    async def _update(self, discount_id: str, changes: Dict[str, Any]) -> None:
        await self.client.mutate(
            UPDATE_MUTATION, {"id": discount_id, "automaticBasicDiscount": changes},
            "discountAutomaticBasicUpdate", RemoteUpdateError, self.resource, resource_id=discount_id,
        )
