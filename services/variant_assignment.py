"""
Variant Assignment Service

Sticky, time-bounded assignment of a shopper session to one recommendation
variant per product. History is append-only: an expired assignment stays in
the table and the next one is written with ``generation`` one higher, so the
unique key (shop, session_id, product_id, generation) admits exactly one
winner when first visits race.
"""
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.errors import ConsistencyError, NotFoundError, ValidationError
from services.storage import StorageService, storage as default_storage
from settings import AB_ASSIGNMENT_TTL_DAYS, resolve_shop_id
from utils import utcnow

logger = logging.getLogger(__name__)


def random_variant_group_id() -> str:
    return f"variant_{uuid.uuid4().hex[:9]}"


class VariantAssignmentService:

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        locks: Optional[ConcurrencyController] = None,
        ttl_days: int = AB_ASSIGNMENT_TTL_DAYS,
    ):
        self.storage = storage or default_storage
        self.locks = locks or concurrency_controller
        self.ttl = timedelta(days=ttl_days)

    async def assign(self, shop: Optional[str], session_id: str, product_id: str) -> Dict[str, Any]:
        """
        Return the session's variant for a product, creating the assignment on first visit.

        Returns:
            {"variantGroupId": ..., "existing": bool, "expiresAt": iso timestamp}

        Raises:
            ValidationError: missing session or product id
            NotFoundError: no active recommendation for the product
        """
        missing = [label for label, value in (("sessionId", session_id), ("productId", product_id)) if not value]
        if missing:
            raise ValidationError([f"Missing required field: {label}" for label in missing])
        shop = resolve_shop_id(shop)

        async with self.locks.hold(ConcurrencyController.assignment_key(shop, session_id, product_id)):
            now = utcnow()
            existing = await self.storage.find_active_assignment(shop, session_id, product_id, now=now)
            if existing is not None:
                return self._result(existing, existing=True)

            recommendation = await self.storage.get_top_recommendation(shop, product_id)
            if recommendation is None:
                raise NotFoundError(
                    f"No active recommendation for product {product_id}",
                    payload={"productId": product_id},
                )

            generation = await self.storage.count_expired_assignments(shop, session_id, product_id, now=now)
            try:
                row = await self.storage.insert_assignment({
                    "shop": shop,
                    "session_id": session_id,
                    "product_id": product_id,
                    "variant_group_id": recommendation.variant_group_id or random_variant_group_id(),
                    "generation": generation,
                    "assigned_at": now,
                    "expires_at": now + self.ttl,
                })
            except IntegrityError:
                # Another worker inserted this generation first; its row is the answer
                winner = await self.storage.find_active_assignment(shop, session_id, product_id, now=now)
                if winner is None:
                    raise ConsistencyError(
                        f"Assignment for session {session_id} / product {product_id} collided but no winner found"
                    )
                logger.info(f"Lost assignment race for {session_id}/{product_id}; using {winner.variant_group_id}")
                return self._result(winner, existing=True)

        logger.info(f"Assigned session {session_id} to {row.variant_group_id} for product {product_id}")
        return self._result(row, existing=False)

    @staticmethod
    def _result(row, existing: bool) -> Dict[str, Any]:
        return {
            "variantGroupId": row.variant_group_id,
            "existing": existing,
            "expiresAt": row.expires_at.isoformat(),
        }


variant_assignment_service = VariantAssignmentService()
