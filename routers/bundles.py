"""
Bundles Router
Merchant bundle lifecycle: create, read, edit, delete, bulk import and
reconciliation. Bundle sync errors are rendered by the app-level handler.
"""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Union
import logging

from services.discount_sync import DiscountSynchronizer, get_synchronizer
from services.errors import BundleSyncError
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


class ComponentPayload(BaseModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    variant_id: Optional[str] = Field(None, alias="variantId")
    quantity: int = 1

    model_config = ConfigDict(populate_by_name=True)


class BundlePayload(BaseModel):
    """Create or patch body; required fields are checked by the synchronizer."""
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    discount_percent: Optional[float] = Field(None, alias="discountPercent")
    components: Optional[List[Union[ComponentPayload, str]]] = None
    status: Optional[str] = None
    min_quantity: Optional[int] = Field(None, alias="minQuantity")

    model_config = ConfigDict(populate_by_name=True)

    def as_data(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ImportRequest(BaseModel):
    bundles: List[Dict[str, Any]]


def get_bundle_synchronizer(shopId: Optional[str] = None) -> DiscountSynchronizer:
    return get_synchronizer(resolve_shop_id(shopId))


@router.post("/bundles")
async def create_bundle(
    request: BundlePayload,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Create bundle, discount and discount link"""
    try:
        bundle = await synchronizer.create_bundle(request.as_data(), shop=resolve_shop_id(shopId))
        return {"success": True, "bundle": bundle.to_dict()}
    except BundleSyncError:
        raise
    except Exception as e:
        logger.error(f"Create bundle error: {e}")
        raise HTTPException(status_code=500, detail="Failed to create bundle")


@router.get("/bundles")
async def list_bundles(
    shopId: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Paginated bundle listing, optionally filtered by status"""
    return await synchronizer.list_bundles(resolve_shop_id(shopId), status=status, page=page, limit=limit)


@router.get("/bundles/stats")
async def bundle_stats(
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    counts = await synchronizer.get_bundle_counts(resolve_shop_id(shopId))
    return {"counts": counts}


@router.get("/bundles/for-product")
async def bundles_for_product(
    productId: str,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Storefront read: active bundles containing the product"""
    bundles = await synchronizer.bundles_for_product(productId, resolve_shop_id(shopId))
    return {"productId": productId, "bundles": bundles}


@router.get("/bundles/orphans")
async def list_orphaned_bundles(
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Active bundles whose discount link is missing or pending recreation"""
    orphans = await synchronizer.find_orphaned_bundles(resolve_shop_id(shopId))
    return {"count": len(orphans), "orphans": orphans}


@router.post("/bundles/import")
async def import_bundles(
    request: ImportRequest,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Create many bundles; each item succeeds or fails on its own"""
    report = await synchronizer.import_bundles(request.bundles, shop=resolve_shop_id(shopId))
    return report.to_dict()


@router.get("/bundles/{bundle_id:path}")
async def get_bundle(
    bundle_id: str,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    bundle = await synchronizer.get_bundle(bundle_id, resolve_shop_id(shopId))
    return bundle.to_dict()


@router.patch("/bundles/{bundle_id:path}")
async def update_bundle(
    bundle_id: str,
    request: BundlePayload,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Edit bundle fields; a component change replaces the discount"""
    try:
        bundle = await synchronizer.update_bundle(bundle_id, resolve_shop_id(shopId), request.as_data())
        return {"success": True, "bundle": bundle.to_dict()}
    except BundleSyncError:
        raise
    except Exception as e:
        logger.error(f"Update bundle error: {e}")
        raise HTTPException(status_code=500, detail="Failed to update bundle")


@router.post("/bundles/{bundle_id:path}/repair")
async def repair_bundle_discount(
    bundle_id: str,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Recreate a discount left missing by an interrupted edit"""
    return await synchronizer.repair_discount(bundle_id, resolve_shop_id(shopId))


@router.delete("/bundles/{bundle_id:path}")
async def delete_bundle(
    bundle_id: str,
    shopId: Optional[str] = None,
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    try:
        await synchronizer.delete_bundle(bundle_id, resolve_shop_id(shopId))
        return {"success": True, "bundleId": bundle_id}
    except BundleSyncError:
        raise
    except Exception as e:
        logger.error(f"Delete bundle error: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete bundle")
