"""
Storage Service Layer
Keyed CRUD over the local tables: discount links, auto-bundle rules,
recommendations, A/B assignments and analytics events.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, delete, func, desc, and_
from typing import List, Optional, Dict, Any
from datetime import datetime
import logging

from database import (
    AsyncSessionLocal, DiscountLink, AutoBundleRule, AIRecommendation,
    ABAssignment, AnalyticsEvent,
)
from utils import utcnow

logger = logging.getLogger(__name__)


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self.session_factory()

    # ---------- Discount links (correlation store) ----------

    async def get_discount_link(self, bundle_id: str) -> Optional[DiscountLink]:
        async with self.get_session() as session:
            return await session.get(DiscountLink, bundle_id)

    async def get_discount_link_by_name(self, shop: str, bundle_name: str) -> Optional[DiscountLink]:
        async with self.get_session() as session:
            result = await session.execute(
                select(DiscountLink).where(
                    and_(DiscountLink.shop == shop, DiscountLink.bundle_name == bundle_name)
                )
            )
            return result.scalar_one_or_none()

    async def list_discount_links(self, shop: str) -> List[DiscountLink]:
        async with self.get_session() as session:
            result = await session.execute(
                select(DiscountLink)
                .where(DiscountLink.shop == shop)
                .order_by(DiscountLink.created_at)
            )
            return list(result.scalars().all())

    async def create_discount_link(
        self, bundle_id: str, discount_id: Optional[str], bundle_name: str, shop: str
    ) -> DiscountLink:
        """Insert a link; a duplicate bundle id or (shop, name) raises IntegrityError."""
        async with self.get_session() as session:
            link = DiscountLink(
                bundle_id=bundle_id,
                discount_id=discount_id,
                bundle_name=bundle_name,
                shop=shop,
            )
            session.add(link)
            await session.commit()
            await session.refresh(link)
            return link

    async def update_discount_link(self, bundle_id: str, updates: Dict[str, Any]) -> Optional[DiscountLink]:
        async with self.get_session() as session:
            link = await session.get(DiscountLink, bundle_id)
            if link is None:
                return None
            for key, value in updates.items():
                if hasattr(link, key):
                    setattr(link, key, value)
            link.updated_at = utcnow()
            await session.commit()
            await session.refresh(link)
            return link

    async def delete_discount_link(self, bundle_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                delete(DiscountLink).where(DiscountLink.bundle_id == bundle_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Auto-bundle rules ----------

    async def create_rule(self, rule_data: Dict[str, Any]) -> AutoBundleRule:
        async with self.get_session() as session:
            rule = AutoBundleRule(**rule_data)
            session.add(rule)
            await session.commit()
            await session.refresh(rule)
            return rule

    async def get_rule(self, rule_id: str, shop: Optional[str] = None) -> Optional[AutoBundleRule]:
        async with self.get_session() as session:
            rule = await session.get(AutoBundleRule, rule_id)
            if rule is None or (shop is not None and rule.shop != shop):
                return None
            return rule

    async def list_rules(self, shop: str, active_only: bool = False) -> List[AutoBundleRule]:
        async with self.get_session() as session:
            query = select(AutoBundleRule).where(AutoBundleRule.shop == shop)
            if active_only:
                query = query.where(AutoBundleRule.is_active.is_(True))
            result = await session.execute(query.order_by(desc(AutoBundleRule.created_at)))
            return list(result.scalars().all())

    async def update_rule(self, rule_id: str, updates: Dict[str, Any]) -> Optional[AutoBundleRule]:
        async with self.get_session() as session:
            rule = await session.get(AutoBundleRule, rule_id)
            if rule is None:
                return None
            for key, value in updates.items():
                if hasattr(rule, key):
                    setattr(rule, key, value)
            rule.updated_at = utcnow()
            await session.commit()
            await session.refresh(rule)
            return rule

    async def delete_rule(self, rule_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(delete(AutoBundleRule).where(AutoBundleRule.id == rule_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    # ---------- Recommendations ----------

    async def create_recommendations(self, recommendations: List[Dict[str, Any]]) -> List[AIRecommendation]:
        async with self.get_session() as session:
            rows = [AIRecommendation(**data) for data in recommendations]
            session.add_all(rows)
            await session.commit()
            return rows

    async def get_top_recommendation(self, shop: str, product_id: str) -> Optional[AIRecommendation]:
        """Highest-confidence active recommendation for a product."""
        async with self.get_session() as session:
            result = await session.execute(
                select(AIRecommendation)
                .where(
                    and_(
                        AIRecommendation.shop == shop,
                        AIRecommendation.product_id == product_id,
                        AIRecommendation.is_active.is_(True),
                    )
                )
                .order_by(desc(AIRecommendation.confidence_score), desc(AIRecommendation.generated_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ---------- A/B assignments ----------

    async def find_active_assignment(
        self, shop: str, session_id: str, product_id: str, now: Optional[datetime] = None
    ) -> Optional[ABAssignment]:
        now = now or utcnow()
        async with self.get_session() as session:
            result = await session.execute(
                select(ABAssignment)
                .where(
                    and_(
                        ABAssignment.shop == shop,
                        ABAssignment.session_id == session_id,
                        ABAssignment.product_id == product_id,
                        ABAssignment.expires_at > now,
                    )
                )
                .order_by(desc(ABAssignment.generation))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def count_expired_assignments(
        self, shop: str, session_id: str, product_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        async with self.get_session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(ABAssignment)
                .where(
                    and_(
                        ABAssignment.shop == shop,
                        ABAssignment.session_id == session_id,
                        ABAssignment.product_id == product_id,
                        ABAssignment.expires_at <= now,
                    )
                )
            )
            return int(result.scalar() or 0)

    async def insert_assignment(self, assignment_data: Dict[str, Any]) -> ABAssignment:
        """Insert an assignment; a concurrent insert for the same generation raises IntegrityError."""
        async with self.get_session() as session:
            row = ABAssignment(**assignment_data)
            session.add(row)
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await session.refresh(row)
            return row

    async def list_assignments(self, shop: str, session_id: str, product_id: str) -> List[ABAssignment]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ABAssignment)
                .where(
                    and_(
                        ABAssignment.shop == shop,
                        ABAssignment.session_id == session_id,
                        ABAssignment.product_id == product_id,
                    )
                )
                .order_by(ABAssignment.generation)
            )
            return list(result.scalars().all())

    # ---------- Analytics events ----------

    async def create_event(self, event_data: Dict[str, Any]) -> AnalyticsEvent:
        async with self.get_session() as session:
            event = AnalyticsEvent(**event_data)
            session.add(event)
            await session.commit()
            await session.refresh(event)
            return event

    async def get_events(self, shop: str, product_id: Optional[str] = None) -> List[AnalyticsEvent]:
        async with self.get_session() as session:
            query = select(AnalyticsEvent).where(AnalyticsEvent.shop == shop)
            if product_id:
                query = query.where(AnalyticsEvent.product_id == product_id)
            result = await session.execute(query.order_by(AnalyticsEvent.created_at))
            return list(result.scalars().all())


# Global storage instance
storage = StorageService()
