"""
Bundle Schemas
==============

Canonical data structures for merchant bundles.

A bundle exists in three places at once: a metaobject record on Shopify (the
canonical definition), an automatic discount on Shopify, and a local
DiscountLink row that correlates the two. These dataclasses describe the
definition side; shape validation happens here, before any remote call, so a
rejected payload can never leave partial remote state behind.

Payloads arrive from the admin UI in camelCase (``discountPercent``,
``productId``) and from internal callers in snake_case; both are accepted.
"""

from typing import List, Dict, Any, Optional, TypedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
import logging

from services.errors import ValidationError

logger = logging.getLogger(__name__)

BUNDLE_STATUSES = ("DRAFT", "ACTIVE", "PAUSED", "ARCHIVED")
MIN_COMPONENTS = 2


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

class BundleComponentDict(TypedDict, total=False):
    productId: str
    variantId: Optional[str]
    quantity: int


class BundleDict(TypedDict, total=False):
    id: str
    name: str
    title: str
    description: str
    discountPercent: float
    components: List[BundleComponentDict]
    status: str
    shop: str
    discountId: Optional[str]
    createdAt: Optional[str]
    updatedAt: Optional[str]


# =============================================================================
# DATACLASS DEFINITIONS
# =============================================================================

@dataclass
class BundleComponent:
    """One product line of a bundle."""
    product_id: str  # "gid://shopify/Product/123"
    variant_id: Optional[str] = None
    quantity: int = 1

    def to_dict(self) -> BundleComponentDict:
        return {
            "productId": self.product_id,
            "variantId": self.variant_id,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "BundleComponent":
        # Older payloads send a bare list of product ids
        if isinstance(data, str):
            return cls(product_id=data)
        return cls(
            product_id=_pick(data, "productId", "product_id", "id"),
            variant_id=_pick(data, "variantId", "variant_id"),
            quantity=int(_pick(data, "quantity", default=1)),
        )


@dataclass
class BundleInput:
    """Validated payload for creating a bundle."""
    name: str
    title: str
    discount_percent: float
    components: List[BundleComponent]
    shop: str
    description: str = ""
    status: str = "ACTIVE"
    minimum_quantity: Optional[int] = None  # None = sum of component quantities

    @property
    def product_ids(self) -> List[str]:
        return distinct_product_ids(self.components)

    @property
    def min_quantity(self) -> int:
        return self.minimum_quantity or sum(c.quantity for c in self.components)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass
class BundlePatch:
    """Partial update. ``None`` means "leave unchanged"."""
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    discount_percent: Optional[float] = None
    components: Optional[List[BundleComponent]] = None
    status: Optional[str] = None

    @property
    def touches_components(self) -> bool:
        return self.components is not None


@dataclass
class Bundle:
    """A bundle as read back from the remote definition store."""
    id: str
    name: str
    title: str
    discount_percent: float
    components: List[BundleComponent]
    shop: str
    description: str = ""
    status: str = "ACTIVE"
    discount_id: Optional[str] = None
    minimum_quantity: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def product_ids(self) -> List[str]:
        return distinct_product_ids(self.components)

    @property
    def min_quantity(self) -> int:
        return self.minimum_quantity or sum(c.quantity for c in self.components)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"

    def apply(self, patch: BundlePatch) -> "Bundle":
        """Return a copy with the patch applied."""
        changes = {
            key: value
            for key, value in (
                ("name", patch.name),
                ("title", patch.title),
                ("description", patch.description),
                ("discount_percent", patch.discount_percent),
                ("components", patch.components),
                ("status", patch.status),
            )
            if value is not None
        }
        return replace(self, **changes)

    def to_dict(self) -> BundleDict:
        return {
            "id": self.id,
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "discountPercent": self.discount_percent,
            "components": [c.to_dict() for c in self.components],
            "status": self.status,
            "shop": self.shop,
            "discountId": self.discount_id,
            "minQuantity": self.min_quantity,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ImportReport:
    """Per-item outcome of a bulk import."""
    success: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": list(self.success), "failed": list(self.failed)}


# =============================================================================
# HELPERS
# =============================================================================

_MISSING = object()


def _pick(data: Any, *keys: str, default: Any = None) -> Any:
    if not isinstance(data, dict):
        return default
    for key in keys:
        value = data.get(key, _MISSING)
        if value is not _MISSING and value is not None:
            return value
    return default


def distinct_product_ids(components: List[BundleComponent]) -> List[str]:
    """Product ids in first-seen order, without duplicates."""
    seen: Dict[str, None] = {}
    for component in components:
        seen.setdefault(component.product_id, None)
    return list(seen)


def _validate_discount(value: Any, errors: List[str]) -> Optional[float]:
    if value is None or value == "":
        errors.append("Missing required field: discountPercent")
        return None
    try:
        percent = float(value)
    except (TypeError, ValueError):
        errors.append(f"discountPercent must be a number, got {value!r}")
        return None
    if not 0 <= percent <= 100:
        errors.append("Discount must be between 0 and 100")
        return None
    return percent


def _validate_components(raw: Any, errors: List[str]) -> Optional[List[BundleComponent]]:
    if not isinstance(raw, list) or not raw:
        errors.append("Missing required field: components")
        return None

    components: List[BundleComponent] = []
    for i, item in enumerate(raw):
        if not isinstance(item, (str, dict)):
            errors.append(f"Component {i}: must be a product id or an object")
            continue
        try:
            component = BundleComponent.from_dict(item)
        except (TypeError, ValueError):
            errors.append(f"Component {i}: quantity must be an integer")
            continue
        if not component.product_id or not str(component.product_id).strip():
            errors.append(f"Component {i}: missing productId")
            continue
        if component.quantity < 1:
            errors.append(f"Component {i}: quantity must be at least 1")
            continue
        components.append(component)

    if len(distinct_product_ids(components)) < MIN_COMPONENTS:
        errors.append(f"Bundle must have at least {MIN_COMPONENTS} distinct products")
    return components


def _validate_status(value: Any, errors: List[str]) -> Optional[str]:
    status = str(value).upper()
    if status not in BUNDLE_STATUSES:
        errors.append(f"Invalid status: {value}")
        return None
    return status


def _validate_min_quantity(value: Any, errors: List[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        errors.append(f"minQuantity must be an integer, got {value!r}")
        return None
    if quantity < 1:
        errors.append("minQuantity must be at least 1")
        return None
    return quantity


def _validate_text(data: Dict[str, Any], keys: tuple, label: str, errors: List[str]) -> Optional[str]:
    value = _pick(data, *keys)
    if value is None or not str(value).strip():
        errors.append(f"Missing required field: {label}")
        return None
    return str(value).strip()


# =============================================================================
# PARSERS
# =============================================================================

def validate_bundle_input(data: Dict[str, Any]) -> tuple[bool, List[str]]:
    """
    Validate a create payload.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    try:
        parse_bundle_input(data)
    except ValidationError as exc:
        return False, exc.errors
    return True, []


def parse_bundle_input(data: Any, shop: Optional[str] = None) -> BundleInput:
    """Build a BundleInput from a raw payload or raise ValidationError listing every problem."""
    if isinstance(data, BundleInput):
        if shop and not data.shop:
            data = replace(data, shop=shop)
        data = {
            "name": data.name,
            "title": data.title,
            "description": data.description,
            "discountPercent": data.discount_percent,
            "components": [c.to_dict() for c in data.components],
            "status": data.status,
            "shop": data.shop,
            "minQuantity": data.minimum_quantity,
        }
    if not isinstance(data, dict):
        raise ValidationError(["Bundle payload must be an object"])

    errors: List[str] = []
    name = _validate_text(data, ("name", "bundleName"), "name", errors)
    title = _validate_text(data, ("title", "bundleTitle"), "title", errors)
    percent = _validate_discount(_pick(data, "discountPercent", "discount_percent", "discount"), errors)
    components = _validate_components(_pick(data, "components", "products"), errors)
    status = _validate_status(_pick(data, "status", default="ACTIVE"), errors)
    resolved_shop = shop or _pick(data, "shop")
    if not resolved_shop:
        errors.append("Missing required field: shop")
    minimum_quantity = _validate_min_quantity(_pick(data, "minQuantity", "min_quantity"), errors)

    if errors:
        raise ValidationError(errors, payload={"name": name})

    return BundleInput(
        name=name,
        title=title,
        discount_percent=percent,
        components=components,
        shop=resolved_shop,
        description=str(_pick(data, "description", default="")),
        status=status,
        minimum_quantity=minimum_quantity,
    )


def parse_bundle_patch(data: Any) -> BundlePatch:
    """Build a BundlePatch; only the keys present are validated."""
    if isinstance(data, BundlePatch):
        return data
    if not isinstance(data, dict):
        raise ValidationError(["Bundle patch must be an object"])

    errors: List[str] = []
    patch = BundlePatch()

    if _pick(data, "name", "bundleName") is not None:
        patch.name = _validate_text(data, ("name", "bundleName"), "name", errors)
    if _pick(data, "title", "bundleTitle") is not None:
        patch.title = _validate_text(data, ("title", "bundleTitle"), "title", errors)
    if "description" in data:
        patch.description = str(data.get("description") or "")
    raw_percent = _pick(data, "discountPercent", "discount_percent", "discount")
    if raw_percent is not None:
        patch.discount_percent = _validate_discount(raw_percent, errors)
    raw_components = _pick(data, "components", "products")
    if raw_components is not None:
        patch.components = _validate_components(raw_components, errors)
    if _pick(data, "status") is not None:
        patch.status = _validate_status(data["status"], errors)

    if errors:
        raise ValidationError(errors)
    return patch
