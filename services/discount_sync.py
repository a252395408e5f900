"""
Discount Synchronizer

Keeps three records of a bundle consistent: the remote bundle definition,
the remote automatic discount, and the local DiscountLink that correlates
them. None of the three writes is transactional with the others, so every
multi-step operation runs in a fixed order with compensating deletes:

create:  bundle -> discount -> link
         discount fails  => delete bundle
         link fails      => delete discount + bundle
update:  bundle fields -> (percent in place | delete discount, NULL link,
         create discount, set link)
delete:  discount (best effort) -> link -> bundle

Mutations of one bundle are serialised through the keyed mutex.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from schemas.bundle_schemas import (
    BUNDLE_STATUSES,
    Bundle,
    BundleInput,
    ImportReport,
    _pick,
    parse_bundle_input,
    parse_bundle_patch,
)
from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.shopify.bundle_store import ShopifyBundleStore
from services.shopify.client import get_shopify_client
from services.shopify.discount_store import ShopifyDiscountStore
from services.errors import (
    BundleSyncError,
    ConsistencyError,
    CorrelationWriteError,
    NotFoundError,
    OrphanedRecordError,
    PartialUpdateError,
    RemoteDeleteError,
    ValidationError,
)
from services.storage import StorageService, storage as default_storage
from settings import resolve_shop_id

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def discount_title(bundle_name: str) -> str:
    return f"Bundle Discount - {bundle_name}"


def _numeric_id(gid: str) -> str:
    # gid://shopify/Product/123 -> 123
    return str(gid).rsplit("/", 1)[-1]


class DiscountSynchronizer:
    """Owns the bundle/discount/link write protocols for one shop's remote stores."""

    def __init__(
        self,
        bundle_store,
        discount_store,
        storage: Optional[StorageService] = None,
        locks: Optional[ConcurrencyController] = None,
    ):
        self.bundles = bundle_store
        self.discounts = discount_store
        self.storage = storage or default_storage
        self.locks = locks or concurrency_controller

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_bundle(self, data: Any, shop: Optional[str] = None) -> Bundle:
        """
        Create the remote bundle, its discount and the local link.

        Raises:
            ValidationError: bad payload or name already taken; nothing written
            RemoteCreateError: bundle or discount creation rejected; nothing left behind
            CorrelationWriteError: link write failed, remote objects rolled back
            ConsistencyError: a compensating delete failed; carries the remote ids
        """
        bundle_input = parse_bundle_input(data, shop=shop)
        shop = resolve_shop_id(bundle_input.shop)

        async with self.locks.hold(ConcurrencyController.bundle_name_key(shop, bundle_input.name)):
            if await self.storage.get_discount_link_by_name(shop, bundle_input.name):
                raise ValidationError(
                    [f"Bundle name '{bundle_input.name}' already exists"],
                    payload={"name": bundle_input.name},
                )

            bundle_id = await self.bundles.create_bundle(bundle_input)

            try:
                discount_id = await self._create_discount(bundle_input)
            except Exception as e:
                logger.error(f"Discount creation failed for bundle {bundle_id}; removing bundle: {e}")
                await self._compensate(bundle_id=bundle_id, discount_id=None, cause=e)
                raise

            try:
                await self.storage.create_discount_link(bundle_id, discount_id, bundle_input.name, shop)
            except Exception as e:
                logger.error(
                    f"Discount link write failed for bundle {bundle_id} / discount {discount_id}; "
                    f"rolling back remote objects: {e}"
                )
                await self._compensate(bundle_id=bundle_id, discount_id=discount_id, cause=e)
                raise CorrelationWriteError(bundle_input.name, e) from e

        logger.info(f"Created bundle {bundle_id} ({bundle_input.name}) with discount {discount_id} for {shop}")
        return Bundle(
            id=bundle_id,
            name=bundle_input.name,
            title=bundle_input.title,
            discount_percent=bundle_input.discount_percent,
            components=list(bundle_input.components),
            shop=shop,
            description=bundle_input.description,
            status=bundle_input.status,
            discount_id=discount_id,
        )

    async def _create_discount(self, bundle) -> str:
        return await self.discounts.create_discount(
            title=discount_title(bundle.name),
            product_ids=bundle.product_ids,
            percent=bundle.discount_percent,
            min_quantity=bundle.min_quantity,
            active=bundle.is_active,
        )

    async def _compensate(self, bundle_id: str, discount_id: Optional[str], cause: Exception) -> None:
        """Delete what was created; escalate to ConsistencyError if any delete fails."""
        failures: List[str] = []
        if discount_id:
            try:
                await self.discounts.delete_discount(discount_id)
            except Exception as e:
                failures.append(f"discount {discount_id}: {e}")
        try:
            await self.bundles.delete_bundle(bundle_id)
        except Exception as e:
            failures.append(f"bundle {bundle_id}: {e}")

        if failures:
            logger.error(f"Compensation failed, manual reconciliation needed: {'; '.join(failures)}")
            raise ConsistencyError(
                f"Rollback after '{cause}' failed: {'; '.join(failures)}",
                bundle_id=bundle_id,
                discount_id=discount_id,
            ) from cause

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_bundle(self, bundle_id: str, shop: Optional[str] = None) -> Bundle:
        shop = resolve_shop_id(shop)
        bundle = await self.bundles.get_bundle(bundle_id)
        if bundle is None or bundle.shop != shop:
            raise NotFoundError(f"Bundle {bundle_id} not found", payload={"bundleId": bundle_id})
        link = await self.storage.get_discount_link(bundle_id)
        bundle.discount_id = link.discount_id if link else None
        return bundle

    async def _shop_bundles(self, shop: str) -> List[Bundle]:
        """Every remote bundle of the shop, newest first, with its discount id joined in."""
        links = {link.bundle_id: link for link in await self.storage.list_discount_links(shop)}
        bundles = [b for b in await self.bundles.list_bundles() if b.shop == shop]
        for bundle in bundles:
            link = links.get(bundle.id)
            bundle.discount_id = link.discount_id if link else None
        bundles.sort(key=lambda b: b.created_at or datetime.min, reverse=True)
        return bundles

    async def list_bundles(
        self,
        shop: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        """
        One page of the shop's bundles, optionally filtered by status.

        Returns ``{"bundles": [...], "pagination": {page, limit, total,
        totalPages, hasNext, hasPrev}}``. ``limit`` is capped at 100.
        """
        shop = resolve_shop_id(shop)
        errors: List[str] = []
        if status is not None:
            status = status.upper()
            if status not in BUNDLE_STATUSES:
                errors.append(f"Invalid status: {status}")
        if page < 1:
            errors.append("page must be at least 1")
        if limit < 1:
            errors.append("limit must be at least 1")
        if errors:
            raise ValidationError(errors)
        limit = min(limit, MAX_PAGE_SIZE)

        bundles = await self._shop_bundles(shop)
        if status:
            bundles = [b for b in bundles if b.status == status]

        total = len(bundles)
        start = (page - 1) * limit
        return {
            "bundles": [b.to_dict() for b in bundles[start:start + limit]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit),
                "hasNext": page * limit < total,
                "hasPrev": page > 1,
            },
        }

    async def get_bundle_counts(self, shop: Optional[str] = None) -> Dict[str, int]:
        """Bundle count per status plus ``total``; every status is present."""
        shop = resolve_shop_id(shop)
        counts = {status: 0 for status in BUNDLE_STATUSES}
        for bundle in await self.bundles.list_bundles():
            if bundle.shop == shop:
                counts[bundle.status] = counts.get(bundle.status, 0) + 1
        counts["total"] = sum(counts.values())
        return counts

    async def bundles_for_product(self, product_id: str, shop: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        ACTIVE bundles containing the product, for the storefront widget.

        ``product_id`` may be a full gid or the bare numeric id.
        """
        shop = resolve_shop_id(shop)
        if not product_id:
            raise ValidationError(["productId is required"])
        wanted = _numeric_id(product_id)
        return [
            b.to_dict()
            for b in await self._shop_bundles(shop)
            if b.is_active and any(_numeric_id(p) == wanted for p in b.product_ids)
        ]

    async def _require_link(self, bundle_id: str, shop: str):
        link = await self.storage.get_discount_link(bundle_id)
        if link is None or link.shop != shop:
            raise NotFoundError(
                f"No discount link found for bundle {bundle_id}",
                payload={"bundleId": bundle_id},
            )
        return link

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_bundle(self, bundle_id: str, shop: Optional[str], data: Any) -> Bundle:
        """
        Apply a partial update.

        Without a component change the discount is updated in place. With one,
        the old discount is deleted before the replacement is created so two
        discounts never stack on the same products.

        Raises:
            NotFoundError: no DiscountLink (or remote bundle) for bundle_id
            PartialUpdateError: old discount gone, replacement not created; retry is safe
        """
        patch = parse_bundle_patch(data)
        shop = resolve_shop_id(shop)

        async with self.locks.hold(ConcurrencyController.bundle_key(shop, bundle_id)):
            link = await self._require_link(bundle_id, shop)
            current = await self.bundles.get_bundle(bundle_id)
            if current is None:
                raise NotFoundError(f"Bundle {bundle_id} not found", payload={"bundleId": bundle_id})

            if patch.name and patch.name != link.bundle_name:
                if await self.storage.get_discount_link_by_name(shop, patch.name):
                    raise ValidationError([f"Bundle name '{patch.name}' already exists"], payload={"name": patch.name})

            updated = current.apply(patch)
            await self.bundles.update_bundle(bundle_id, updated)

            if patch.touches_components or link.discount_id is None:
                discount_id = await self._replace_discount(link, updated)
            else:
                discount_id = link.discount_id
                if patch.discount_percent is not None and patch.discount_percent != current.discount_percent:
                    await self.discounts.update_discount_percentage(discount_id, updated.discount_percent)
                if updated.is_active != current.is_active:
                    await self.discounts.toggle_discount(discount_id, updated.is_active)
                if updated.name != link.bundle_name:
                    await self.discounts.update_discount_title(discount_id, discount_title(updated.name))
                    await self.storage.update_discount_link(bundle_id, {"bundle_name": updated.name})

        logger.info(f"Updated bundle {bundle_id} for {shop} (discount {discount_id})")
        updated.discount_id = discount_id
        return updated

    async def _replace_discount(self, link, bundle: Bundle) -> str:
        bundle_id = link.bundle_id
        old_discount_id = link.discount_id

        if old_discount_id:
            await self.discounts.delete_discount(old_discount_id)
            try:
                await self.storage.update_discount_link(bundle_id, {"discount_id": None})
            except Exception as e:
                raise ConsistencyError(
                    f"Discount {old_discount_id} deleted but link for bundle {bundle_id} still references it: {e}",
                    bundle_id=bundle_id,
                    discount_id=old_discount_id,
                ) from e
            logger.info(f"Deleted discount {old_discount_id} of bundle {bundle_id} pending recreation")
        else:
            logger.info(f"Bundle {bundle_id} has no discount recorded; recreating without delete")

        return await self._create_replacement(bundle_id, bundle)

    async def _create_replacement(self, bundle_id: str, bundle: Bundle) -> str:
        try:
            new_discount_id = await self._create_discount(bundle)
        except Exception as e:
            logger.error(f"Discount recreation failed for bundle {bundle_id}: {e}")
            raise PartialUpdateError(bundle_id) from e

        try:
            await self.storage.update_discount_link(
                bundle_id, {"discount_id": new_discount_id, "bundle_name": bundle.name}
            )
        except Exception as e:
            logger.error(f"Link update failed for bundle {bundle_id}; removing discount {new_discount_id}: {e}")
            try:
                await self.discounts.delete_discount(new_discount_id)
            except Exception as rollback_error:
                raise ConsistencyError(
                    f"Discount {new_discount_id} created but not recorded, and its removal failed: {rollback_error}",
                    bundle_id=bundle_id,
                    discount_id=new_discount_id,
                ) from rollback_error
            raise PartialUpdateError(bundle_id, f"Could not record new discount for bundle {bundle_id}: {e}") from e

        return new_discount_id

    async def set_discount_active(self, bundle_id: str, shop: Optional[str], active: bool) -> str:
        """Toggle the bundle's discount via its date range; returns the discount id."""
        shop = resolve_shop_id(shop)
        async with self.locks.hold(ConcurrencyController.bundle_key(shop, bundle_id)):
            link = await self._require_link(bundle_id, shop)
            if not link.discount_id:
                raise PartialUpdateError(bundle_id)
            await self.discounts.toggle_discount(link.discount_id, active)
            return link.discount_id

    async def repair_discount(self, bundle_id: str, shop: Optional[str] = None) -> Dict[str, Any]:
        """Recreate a discount left missing by a PartialUpdateError. Never deletes."""
        shop = resolve_shop_id(shop)
        async with self.locks.hold(ConcurrencyController.bundle_key(shop, bundle_id)):
            link = await self._require_link(bundle_id, shop)
            if link.discount_id:
                return {"bundleId": bundle_id, "discountId": link.discount_id, "repaired": False}

            bundle = await self.bundles.get_bundle(bundle_id)
            if bundle is None:
                raise NotFoundError(f"Bundle {bundle_id} not found", payload={"bundleId": bundle_id})
            discount_id = await self._create_replacement(bundle_id, bundle)

        logger.info(f"Repaired discount for bundle {bundle_id}: {discount_id}")
        return {"bundleId": bundle_id, "discountId": discount_id, "repaired": True}

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_bundle(self, bundle_id: str, shop: Optional[str] = None) -> None:
        """
        Delete discount, then link, then bundle definition.

        A missing link is logged and skipped so the remote bundle can always be
        removed. The discount delete is best effort: a discount that is already
        gone, or that cannot be removed, is logged and the delete carries on.
        """
        shop = resolve_shop_id(shop)
        async with self.locks.hold(ConcurrencyController.bundle_key(shop, bundle_id)):
            link = await self.storage.get_discount_link(bundle_id)
            if link is not None and link.shop != shop:
                raise NotFoundError(f"Bundle {bundle_id} not found", payload={"bundleId": bundle_id})

            if link is None:
                logger.warning(OrphanedRecordError(bundle_id).message + "; deleting bundle anyway")
            else:
                if link.discount_id:
                    try:
                        await self.discounts.delete_discount(link.discount_id)
                    except RemoteDeleteError as e:
                        logger.warning(
                            f"Could not delete discount {link.discount_id} of bundle {bundle_id}, "
                            f"continuing with bundle delete: {e.message}"
                        )
                await self.storage.delete_discount_link(bundle_id)

            await self.bundles.delete_bundle(bundle_id)

        logger.info(f"Deleted bundle {bundle_id} for {shop}")

    # ------------------------------------------------------------------
    # Batch and reconciliation
    # ------------------------------------------------------------------

    async def import_bundles(self, items: Iterable[Any], shop: Optional[str] = None) -> ImportReport:
        """Create each bundle independently; failures are reported, not raised."""
        report = ImportReport()
        for index, item in enumerate(items):
            if isinstance(item, BundleInput):
                name = item.name
            else:
                name = str(_pick(item, "name", "bundleName", default="") or f"item {index}")
            try:
                bundle = await self.create_bundle(item, shop=shop)
                report.success.append(bundle.name)
            except BundleSyncError as e:
                logger.warning(f"Import of bundle '{name}' failed: {e.message}")
                report.failed.append({"name": name, "error": e.message})
            except Exception as e:
                logger.exception(f"Unexpected error importing bundle '{name}'")
                report.failed.append({"name": name, "error": str(e)})
        logger.info(f"Imported {len(report.success)} bundles, {len(report.failed)} failed")
        return report

    async def find_orphaned_bundles(self, shop: Optional[str] = None) -> List[Dict[str, Any]]:
        """ACTIVE remote bundles with no DiscountLink, or with one whose discount is pending recreation."""
        shop = resolve_shop_id(shop)
        links = {link.bundle_id: link for link in await self.storage.list_discount_links(shop)}
        orphans = []
        for bundle in await self.bundles.list_bundles():
            if not bundle.is_active:
                continue
            link = links.get(bundle.id)
            if link is None:
                orphans.append({"bundleId": bundle.id, "name": bundle.name, "reason": "missing_link"})
            elif link.discount_id is None:
                orphans.append({"bundleId": bundle.id, "name": bundle.name, "reason": "discount_pending"})
        if orphans:
            logger.warning(f"Found {len(orphans)} orphaned bundles for {shop}")
        return orphans


def get_synchronizer(shop: str) -> DiscountSynchronizer:
    """Synchronizer wired to the shop's Shopify stores."""
    client = get_shopify_client(shop)
    return DiscountSynchronizer(ShopifyBundleStore(client), ShopifyDiscountStore(client))
