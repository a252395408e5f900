"""
Auto-Bundle Rules Router
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
import logging

from services.auto_bundle_rules import AutoBundleRuleEngine, get_rule_engine
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/autobundle")


class RulePayload(BaseModel):
    name: Optional[str] = None
    collections: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    min_price: float = Field(0, alias="minPrice")
    max_price: float = Field(0, alias="maxPrice")
    min_products: int = Field(2, alias="minProducts")
    discount_percent: float = Field(10, alias="discountPercent")

    model_config = ConfigDict(populate_by_name=True)

    def as_data(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToggleRequest(BaseModel):
    is_active: bool = Field(..., alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


def get_auto_bundle_engine(shopId: Optional[str] = None) -> AutoBundleRuleEngine:
    return get_rule_engine(resolve_shop_id(shopId))


@router.get("/rules")
async def list_rules(
    shopId: Optional[str] = None,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    return {"rules": await engine.list_rules(resolve_shop_id(shopId))}


@router.post("/rules")
async def create_rule(
    request: RulePayload,
    shopId: Optional[str] = None,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    """Create an active rule and generate its bundle"""
    rule = await engine.create_rule(request.as_data(), shop=resolve_shop_id(shopId))
    return {"success": True, "rule": rule}


@router.post("/preview")
async def preview_rule(
    request: RulePayload,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    """Products a rule would select, without writing anything"""
    return await engine.preview_rule(request.as_data())


@router.post("/rules/sync")
async def sync_rules(
    shopId: Optional[str] = None,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    return await engine.sync_rules(resolve_shop_id(shopId))


@router.post("/rules/{rule_id}/toggle")
async def toggle_rule(
    rule_id: str,
    request: ToggleRequest,
    shopId: Optional[str] = None,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    rule = await engine.toggle_rule(rule_id, request.is_active, shop=resolve_shop_id(shopId))
    return {"success": True, "rule": rule}


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    shopId: Optional[str] = None,
    engine: AutoBundleRuleEngine = Depends(get_auto_bundle_engine),
):
    await engine.delete_rule(rule_id, shop=resolve_shop_id(shopId))
    return {"success": True, "ruleId": rule_id}
