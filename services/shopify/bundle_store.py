"""
Remote Bundle Store: canonical bundle definitions kept as Shopify metaobjects.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import requests

from schemas.bundle_schemas import Bundle, BundleComponent, BundleInput
from services.errors import RemoteCreateError, RemoteDeleteError, RemoteError, RemoteUpdateError
from services.shopify.client import ShopifyGraphQLClient, ShopifyGraphQLError
from settings import BUNDLE_METAOBJECT_TYPE
from utils import utcnow

logger = logging.getLogger(__name__)

METAOBJECT_FIELDS = """
      id
      handle
      updatedAt
      fields { key value }
"""

CREATE_MUTATION = """
mutation CreateBundle($metaobject: MetaobjectCreateInput!) {
  metaobjectCreate(metaobject: $metaobject) {
    metaobject { id handle }
    userErrors { field message code }
  }
}
"""

UPDATE_MUTATION = """
mutation UpdateBundle($id: ID!, $metaobject: MetaobjectUpdateInput!) {
  metaobjectUpdate(id: $id, metaobject: $metaobject) {
    metaobject { id }
    userErrors { field message code }
  }
}
"""

DELETE_MUTATION = """
mutation DeleteBundle($id: ID!) {
  metaobjectDelete(id: $id) {
    deletedId
    userErrors { field message code }
  }
}
"""

GET_QUERY = """
query GetBundle($id: ID!) {
  metaobject(id: $id) {%s}
}
""" % METAOBJECT_FIELDS

LIST_QUERY = """
query ListBundles($type: String!, $after: String) {
  metaobjects(type: $type, first: 100, after: $after) {
    edges { node {%s} }
    pageInfo { hasNextPage endCursor }
  }
}
""" % METAOBJECT_FIELDS


def _format_percent(value: float) -> str:
    return f"{float(value):g}"


def bundle_fields(bundle: Union[BundleInput, Bundle], created_at: Optional[datetime] = None) -> List[Dict[str, str]]:
    """Metaobject field list for a bundle definition."""
    fields = [
        {"key": "bundle_name", "value": bundle.name},
        {"key": "bundle_title", "value": bundle.title},
        {"key": "description", "value": bundle.description or ""},
        {"key": "discount", "value": _format_percent(bundle.discount_percent)},
        {"key": "products", "value": json.dumps(bundle.product_ids)},
        {"key": "components", "value": json.dumps([c.to_dict() for c in bundle.components])},
        {"key": "status", "value": bundle.status},
    ]
    if bundle.minimum_quantity:
        fields.append({"key": "min_quantity", "value": str(bundle.minimum_quantity)})
    if created_at is not None:
        fields.append({"key": "created_at", "value": created_at.isoformat()})
    return fields


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def _load_json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return loaded if isinstance(loaded, list) else []


def bundle_from_node(node: Dict[str, Any], shop: str) -> Bundle:
    """Decode a metaobject node back into a Bundle."""
    fields = {f["key"]: f.get("value") for f in node.get("fields") or []}

    components = [BundleComponent.from_dict(c) for c in _load_json_list(fields.get("components"))]
    if not components:
        # Records written before components were stored only list product ids
        components = [BundleComponent(product_id=p) for p in _load_json_list(fields.get("products"))]

    try:
        percent = float(fields.get("discount") or 0)
    except ValueError:
        percent = 0.0

    return Bundle(
        id=node["id"],
        name=fields.get("bundle_name") or node.get("handle") or "",
        title=fields.get("bundle_title") or "",
        discount_percent=percent,
        components=components,
        shop=shop,
        description=fields.get("description") or "",
        status=(fields.get("status") or "ACTIVE").upper(),
        minimum_quantity=int(fields["min_quantity"]) if (fields.get("min_quantity") or "").isdigit() else None,
        created_at=_parse_datetime(fields.get("created_at")),
        updated_at=_parse_datetime(node.get("updatedAt")),
    )


class ShopifyBundleStore:
    """CRUD over ``product-bundles`` metaobjects for one shop."""

    resource = "bundle"

    def __init__(self, client: ShopifyGraphQLClient, metaobject_type: str = BUNDLE_METAOBJECT_TYPE):
        self.client = client
        self.metaobject_type = metaobject_type

    @property
    def shop(self) -> str:
        return self.client.shop

    async def create_bundle(self, bundle: BundleInput) -> str:
        variables = {
            "metaobject": {
                "type": self.metaobject_type,
                "fields": bundle_fields(bundle, created_at=utcnow()),
                "capabilities": {
                    "publishable": {"status": "ACTIVE" if bundle.is_active else "DRAFT"}
                },
            }
        }
        result = await self.client.mutate(
            CREATE_MUTATION, variables, "metaobjectCreate",
            RemoteCreateError, self.resource, idempotent=False,
        )
        metaobject = result.get("metaobject") or {}
        if not metaobject.get("id"):
            raise RemoteCreateError(self.resource, message="metaobjectCreate returned no id")
        logger.info("Created bundle metaobject %s (%s) for %s", metaobject["id"], bundle.name, self.shop)
        return metaobject["id"]

    async def update_bundle(self, bundle_id: str, bundle: Bundle) -> None:
        variables = {
            "id": bundle_id,
            "metaobject": {
                "fields": bundle_fields(bundle),
                "capabilities": {
                    "publishable": {"status": "ACTIVE" if bundle.is_active else "DRAFT"}
                },
            },
        }
        await self.client.mutate(
            UPDATE_MUTATION, variables, "metaobjectUpdate",
            RemoteUpdateError, self.resource, resource_id=bundle_id,
        )
        logger.info("Updated bundle metaobject %s for %s", bundle_id, self.shop)

    async def delete_bundle(self, bundle_id: str) -> None:
        await self.client.mutate(
            DELETE_MUTATION, {"id": bundle_id}, "metaobjectDelete",
            RemoteDeleteError, self.resource, resource_id=bundle_id, idempotent=False,
        )
        logger.info("Deleted bundle metaobject %s for %s", bundle_id, self.shop)

    async def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        data = await self._query(GET_QUERY, {"id": bundle_id})
        node = data.get("metaobject")
        if not node:
            return None
        return bundle_from_node(node, self.shop)

    async def list_bundles(self) -> List[Bundle]:
        bundles: List[Bundle] = []
        after: Optional[str] = None
        while True:
            data = await self._query(LIST_QUERY, {"type": self.metaobject_type, "after": after})
            page = data.get("metaobjects") or {}
            for edge in page.get("edges") or []:
                bundles.append(bundle_from_node(edge["node"], self.shop))
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return bundles
            after = info.get("endCursor")

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.client.execute(query, variables)
        except (ShopifyGraphQLError, requests.RequestException, TimeoutError) as e:
            logger.error("Shopify bundle query failed on %s: %s", self.shop, e)
            raise RemoteError(self.resource, message=str(e)) from e
