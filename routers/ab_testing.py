"""
A/B Testing Router
Storefront-facing: variant assignment and event tracking, plus the merchant
analytics report.
"""
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
import logging

from services.analytics.event_aggregator import aggregate
from services.analytics.event_tracker import track_event, validate_event
from services.errors import ValidationError
from services.storage import StorageService, storage
from services.variant_assignment import VariantAssignmentService, variant_assignment_service
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ab")


class AssignRequest(BaseModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    product_id: str = Field(..., alias="productId", min_length=1)
    shop: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class TrackEventRequest(BaseModel):
    bundle_id: Optional[str] = Field(None, alias="bundleId")
    product_id: Optional[str] = Field(None, alias="productId")
    event_type: Optional[str] = Field(None, alias="eventType")
    session_id: Optional[str] = Field(None, alias="sessionId")
    variant_group_id: Optional[str] = Field(None, alias="variantGroupId")
    customer_id: Optional[str] = Field(None, alias="customerId")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    shop: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


def get_assignment_service() -> VariantAssignmentService:
    return variant_assignment_service


def get_storage() -> StorageService:
    return storage


@router.post("/assign")
async def assign_variant(
    request: AssignRequest,
    shopId: Optional[str] = None,
    service: VariantAssignmentService = Depends(get_assignment_service),
):
    """Sticky variant for this session and product"""
    return await service.assign(resolve_shop_id(request.shop, shopId), request.session_id, request.product_id)


@router.post("/events")
async def track(
    request: TrackEventRequest,
    background_tasks: BackgroundTasks,
    shopId: Optional[str] = None,
    event_storage: StorageService = Depends(get_storage),
):
    """Validate now, write after the response is sent"""
    errors = validate_event(request.bundle_id, request.product_id, request.event_type, request.session_id)
    if errors:
        raise ValidationError(errors)

    background_tasks.add_task(
        track_event,
        resolve_shop_id(request.shop, shopId),
        request.bundle_id,
        request.product_id,
        request.event_type,
        request.session_id,
        request.metadata,
        variant_group_id=request.variant_group_id,
        customer_id=request.customer_id,
        storage=event_storage,
    )
    return {"success": True}


@router.get("/analytics")
async def variant_analytics(
    shopId: Optional[str] = None,
    productId: Optional[str] = None,
    event_storage: StorageService = Depends(get_storage),
):
    """Per-variant funnel metrics"""
    return await aggregate(resolve_shop_id(shopId), product_id=productId, storage=event_storage)
