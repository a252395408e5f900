"""In-memory stand-ins for the Shopify stores, with failure injection.

Set ``store.fail_on["create"] = SomeError(...)`` to make the next and every
following call of that operation raise until the key is removed.
"""
import itertools
from dataclasses import replace
from typing import Any, Dict, List, Optional

from schemas.bundle_schemas import Bundle
from services.errors import RemoteDeleteError, RemoteUpdateError
from services.shopify.catalog import CatalogProduct

SHOP = "test-shop.myshopify.com"


class _FailureInjection:
    def __init__(self):
        self.fail_on: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op,) + args)
        exc = self.fail_on.get(op)
        if exc is not None:
            raise exc

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)


class FakeBundleStore(_FailureInjection):
    def __init__(self, shop: str):
        super().__init__()
        self.shop = shop
        self.bundles: Dict[str, Bundle] = {}
        self._ids = itertools.count(1)

    async def create_bundle(self, bundle_input) -> str:
        self._record("create", bundle_input.name)
        bundle_id = f"gid://shopify/Metaobject/{next(self._ids)}"
        self.bundles[bundle_id] = Bundle(
            id=bundle_id,
            name=bundle_input.name,
            title=bundle_input.title,
            discount_percent=bundle_input.discount_percent,
            components=list(bundle_input.components),
            shop=self.shop,
            description=bundle_input.description,
            status=bundle_input.status,
            minimum_quantity=bundle_input.minimum_quantity,
        )
        return bundle_id

    async def update_bundle(self, bundle_id: str, bundle: Bundle) -> None:
        self._record("update", bundle_id)
        if bundle_id not in self.bundles:
            raise RemoteUpdateError("bundle", ["Metaobject does not exist"], resource_id=bundle_id)
        self.bundles[bundle_id] = replace(bundle, discount_id=None)

    async def delete_bundle(self, bundle_id: str) -> None:
        self._record("delete", bundle_id)
        if bundle_id not in self.bundles:
            raise RemoteDeleteError("bundle", ["Metaobject does not exist"], resource_id=bundle_id)
        del self.bundles[bundle_id]

    async def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        bundle = self.bundles.get(bundle_id)
        return replace(bundle, components=list(bundle.components)) if bundle else None

    async def list_bundles(self) -> List[Bundle]:
        return [replace(b, components=list(b.components)) for b in self.bundles.values()]


class FakeDiscountStore(_FailureInjection):
    def __init__(self):
        super().__init__()
        self.discounts: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    async def create_discount(self, title, product_ids, percent, min_quantity, active=True) -> str:
        self._record("create", title)
        discount_id = f"gid://shopify/DiscountAutomaticNode/{next(self._ids)}"
        self.discounts[discount_id] = {
            "title": title,
            "product_ids": list(product_ids),
            "percent": percent,
            "min_quantity": min_quantity,
            "active": active,
        }
        return discount_id

    async def update_discount_percentage(self, discount_id: str, percent: float) -> None:
        self._record("update", discount_id)
        if discount_id not in self.discounts:
            raise RemoteUpdateError("discount", ["Discount does not exist"], resource_id=discount_id)
        self.discounts[discount_id]["percent"] = percent

    async def update_discount_title(self, discount_id: str, title: str) -> None:
        self._record("retitle", discount_id, title)
        if discount_id not in self.discounts:
            raise RemoteUpdateError("discount", ["Discount does not exist"], resource_id=discount_id)
        self.discounts[discount_id]["title"] = title

    async def toggle_discount(self, discount_id: str, active: bool) -> None:
        self._record("toggle", discount_id, active)
        if discount_id not in self.discounts:
            raise RemoteUpdateError("discount", ["Discount does not exist"], resource_id=discount_id)
        self.discounts[discount_id]["active"] = active

    async def delete_discount(self, discount_id: str) -> None:
        self._record("delete", discount_id)
        if discount_id not in self.discounts:
            raise RemoteDeleteError("discount", ["Discount does not exist"], resource_id=discount_id)
        del self.discounts[discount_id]


class FakeCatalog(_FailureInjection):
    def __init__(self, collections: Dict[str, List[CatalogProduct]]):
        super().__init__()
        self.collections = collections

    async def list_collections(self) -> List[str]:
        self._record("list_collections")
        return list(self.collections)

    async def fetch_collection_products(self, collection_id: str) -> List[CatalogProduct]:
        self._record("fetch", collection_id)
        return list(self.collections.get(collection_id, []))
