"""
Auto-Bundle Rule Engine

A rule turns every catalog product matching its collection, tag and price
filters into one generated bundle named ``auto-rule-<rule id>``. Bundle writes
go through the DiscountSynchronizer; deactivating a rule only ends its
discount's date range so reactivation is cheap and never duplicates anything.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from schemas.rule_schemas import RuleCriteria, criteria_from_rule, parse_rule_criteria, rule_to_dict
from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.discount_sync import DiscountSynchronizer, get_synchronizer
from services.errors import NotFoundError, OrphanedRecordError, RemoteDeleteError
from services.shopify.catalog import CatalogProduct, ShopifyCatalog
from services.shopify.client import get_shopify_client
from services.storage import StorageService, storage as default_storage
from settings import resolve_shop_id

logger = logging.getLogger(__name__)

MAX_PREVIEW_PRODUCTS = 20


def auto_bundle_name(rule_id: str) -> str:
    return f"auto-rule-{rule_id}"


def auto_bundle_title(rule_name: str) -> str:
    return f"Auto Bundle: {rule_name}"


def matches_tags(product_tags: List[str], required_tags: List[str]) -> bool:
    """No required tags matches everything; otherwise any one tag is enough."""
    if not required_tags:
        return True
    return any(tag in product_tags for tag in required_tags)


def matches_price(price: float, min_price: float, max_price: float) -> bool:
    """A max of 0 leaves the range open-ended."""
    if min_price == 0 and max_price == 0:
        return True
    if max_price == 0:
        return price >= min_price
    return min_price <= price <= max_price


class AutoBundleRuleEngine:

    def __init__(
        self,
        synchronizer: DiscountSynchronizer,
        catalog,
        storage: Optional[StorageService] = None,
        locks: Optional[ConcurrencyController] = None,
    ):
        self.synchronizer = synchronizer
        self.catalog = catalog
        self.storage = storage or default_storage
        self.locks = locks or concurrency_controller

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    async def select_candidates(self, criteria: RuleCriteria) -> Tuple[List[CatalogProduct], int]:
        """Matching products (deduplicated, catalog order) and how many were scanned."""
        collections = criteria.collections or await self.catalog.list_collections()
        matched: Dict[str, CatalogProduct] = {}
        scanned = 0
        for collection_id in collections:
            for product in await self.catalog.fetch_collection_products(collection_id):
                scanned += 1
                if product.id in matched:
                    continue
                if not matches_tags(product.tags, criteria.tags):
                    continue
                if not matches_price(product.price, criteria.min_price, criteria.max_price):
                    continue
                matched[product.id] = product
        return list(matched.values()), scanned

    async def preview_rule(self, data: Any) -> Dict[str, Any]:
        """Dry run of candidate selection. No remote writes."""
        criteria = parse_rule_criteria(data, require_name=False)
        matched, scanned = await self.select_candidates(criteria)
        return {
            "matchingProducts": [p.to_dict() for p in matched[:MAX_PREVIEW_PRODUCTS]],
            "totalMatches": len(matched),
            "scannedProducts": scanned,
            "meetsMinimum": len(matched) >= criteria.min_products,
            "criteria": criteria.summary(),
        }

    # ------------------------------------------------------------------
    # Rule lifecycle
    # ------------------------------------------------------------------

    async def list_rules(self, shop: Optional[str] = None) -> List[Dict[str, Any]]:
        shop = resolve_shop_id(shop)
        return [rule_to_dict(rule) for rule in await self.storage.list_rules(shop)]

    async def _require_rule(self, rule_id: str, shop: str):
        rule = await self.storage.get_rule(rule_id, shop=shop)
        if rule is None:
            raise NotFoundError(f"Auto-bundle rule {rule_id} not found", payload={"ruleId": rule_id})
        return rule

    async def create_rule(self, data: Any, shop: Optional[str] = None) -> Dict[str, Any]:
        """
        Store an active rule and generate its bundle.

        A generation failure leaves the rule in place and is reported in the
        result; ``sync_rules`` or a later toggle retries it.
        """
        criteria = parse_rule_criteria(data)
        shop = resolve_shop_id(shop)

        rule = await self.storage.create_rule({
            "shop": shop,
            "name": criteria.name,
            "collections": criteria.collections,
            "tags": criteria.tags,
            "min_price": criteria.min_price,
            "max_price": criteria.max_price,
            "min_products": criteria.min_products,
            "discount_percent": criteria.discount_percent,
            "is_active": True,
        })
        logger.info(f"Created auto-bundle rule {rule.id} ({rule.name}) for {shop}")

        async with self.locks.hold(ConcurrencyController.rule_key(shop, rule.id)):
            try:
                generated = await self._activate(rule)
            except Exception as e:
                logger.error(f"Bundle generation failed for rule {rule.id}: {e}")
                generated = {"generated": False, "error": str(e)}
        return rule_to_dict(await self._require_rule(rule.id, shop), generated)

    async def toggle_rule(self, rule_id: str, is_active: bool, shop: Optional[str] = None) -> Dict[str, Any]:
        """
        Activate: reuse the generated bundle if one exists, otherwise generate it.
        Deactivate: end the discount's date range; nothing is deleted.
        """
        shop = resolve_shop_id(shop)
        async with self.locks.hold(ConcurrencyController.rule_key(shop, rule_id)):
            rule = await self._require_rule(rule_id, shop)

            if is_active:
                generated = await self._activate(rule)
            else:
                generated = await self._deactivate(rule)

            rule = await self.storage.update_rule(rule.id, {"is_active": is_active})
        logger.info(f"Auto-bundle rule {rule_id} {'activated' if is_active else 'deactivated'}")
        return rule_to_dict(rule, generated)

    async def delete_rule(self, rule_id: str, shop: Optional[str] = None) -> None:
        """
        Delete the generated bundle (if any), then the rule row.

        The rule row is always removed: a missing link or a generated bundle
        that is already gone is logged, not raised.
        """
        shop = resolve_shop_id(shop)
        async with self.locks.hold(ConcurrencyController.rule_key(shop, rule_id)):
            rule = await self._require_rule(rule_id, shop)
            link = await self._find_link(rule)
            bundle_id = link.bundle_id if link else rule.bundle_id

            if link is None:
                logger.warning(
                    OrphanedRecordError(bundle_id or auto_bundle_name(rule.id)).message + "; deleting rule anyway"
                )
            if bundle_id:
                try:
                    await self.synchronizer.delete_bundle(bundle_id, shop)
                except RemoteDeleteError as e:
                    logger.warning(f"Generated bundle {bundle_id} of rule {rule.id} not deleted: {e.message}")

            await self.storage.delete_rule(rule.id)
        logger.info(f"Deleted auto-bundle rule {rule_id} for {shop}")

    async def sync_rules(self, shop: Optional[str] = None) -> Dict[str, Any]:
        """Re-evaluate every active rule; each one succeeds or fails on its own."""
        shop = resolve_shop_id(shop)
        success: List[str] = []
        failed: List[Dict[str, str]] = []
        for rule in await self.storage.list_rules(shop, active_only=True):
            try:
                async with self.locks.hold(ConcurrencyController.rule_key(shop, rule.id)):
                    await self._activate(rule)
                success.append(rule.name)
            except Exception as e:
                logger.warning(f"Sync of auto-bundle rule {rule.id} ({rule.name}) failed: {e}")
                failed.append({"name": rule.name, "error": str(e)})
        return {"success": success, "failed": failed}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _find_link(self, rule):
        if rule.bundle_id:
            link = await self.storage.get_discount_link(rule.bundle_id)
            if link is not None:
                return link
        return await self.storage.get_discount_link_by_name(rule.shop, auto_bundle_name(rule.id))

    async def _activate(self, rule) -> Dict[str, Any]:
        link = await self._find_link(rule)
        if link is not None:
            if link.discount_id:
                discount_id = await self.synchronizer.set_discount_active(link.bundle_id, rule.shop, True)
            else:
                discount_id = (await self.synchronizer.repair_discount(link.bundle_id, rule.shop))["discountId"]
            if rule.bundle_id != link.bundle_id:
                await self.storage.update_rule(rule.id, {"bundle_id": link.bundle_id})
            return {"generated": False, "reused": True, "bundleId": link.bundle_id, "discountId": discount_id}

        criteria = criteria_from_rule(rule)
        matched, scanned = await self.select_candidates(criteria)
        if len(matched) < criteria.min_products:
            logger.info(
                f"Rule {rule.id} matched {len(matched)} of {scanned} products; "
                f"{criteria.min_products} required, no bundle generated"
            )
            return {"generated": False, "matchedProducts": len(matched)}

        bundle = await self.synchronizer.create_bundle(
            {
                "name": auto_bundle_name(rule.id),
                "title": auto_bundle_title(rule.name),
                "description": f"Generated by auto-bundle rule '{rule.name}'",
                "discountPercent": criteria.discount_percent,
                "components": [{"productId": p.id} for p in matched],
                "minQuantity": criteria.min_products,
            },
            shop=rule.shop,
        )
        await self.storage.update_rule(rule.id, {"bundle_id": bundle.id})
        return {
            "generated": True,
            "bundleId": bundle.id,
            "discountId": bundle.discount_id,
            "matchedProducts": len(matched),
        }

    async def _deactivate(self, rule) -> Dict[str, Any]:
        link = await self._find_link(rule)
        if link is None or not link.discount_id:
            logger.info(f"Rule {rule.id} has no active discount to end")
            return {"bundleId": link.bundle_id if link else None, "discountId": None}
        await self.synchronizer.set_discount_active(link.bundle_id, rule.shop, False)
        return {"bundleId": link.bundle_id, "discountId": link.discount_id}


def get_rule_engine(shop: str) -> AutoBundleRuleEngine:
    return AutoBundleRuleEngine(get_synchronizer(shop), ShopifyCatalog(get_shopify_client(shop)))
