"""
Read-only catalog access used by auto-bundle rules.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.errors import RemoteError
from services.shopify.client import ShopifyGraphQLClient, ShopifyGraphQLError

logger = logging.getLogger(__name__)

COLLECTIONS_QUERY = """
query ListCollections($after: String) {
  collections(first: 250, after: $after) {
    edges { node { id title } }
    pageInfo { hasNextPage endCursor }
  }
}
"""

COLLECTION_PRODUCTS_QUERY = """
query CollectionProducts($id: ID!, $after: String) {
  collection(id: $id) {
    products(first: 250, after: $after) {
      edges {
        node {
          id
          title
          handle
          tags
          featuredImage { url }
          priceRangeV2 { maxVariantPrice { amount } }
        }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""


@dataclass
class CatalogProduct:
    id: str
    title: str
    tags: List[str] = field(default_factory=list)
    price: float = 0.0  # max variant price
    handle: str = ""
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "handle": self.handle,
            "tags": list(self.tags),
            "price": self.price,
            "imageUrl": self.image_url,
        }

    @classmethod
    def from_node(cls, node: Dict[str, Any]) -> "CatalogProduct":
        amount = (((node.get("priceRangeV2") or {}).get("maxVariantPrice") or {}).get("amount")) or 0
        return cls(
            id=node["id"],
            title=node.get("title") or "",
            tags=list(node.get("tags") or []),
            price=float(amount),
            handle=node.get("handle") or "",
            image_url=(node.get("featuredImage") or {}).get("url"),
        )


class ShopifyCatalog:
    resource = "catalog"

    def __init__(self, client: ShopifyGraphQLClient):
        self.client = client

    async def list_collections(self) -> List[str]:
        collection_ids: List[str] = []
        after: Optional[str] = None
        while True:
            data = await self._query(COLLECTIONS_QUERY, {"after": after})
            page = data.get("collections") or {}
            collection_ids.extend(edge["node"]["id"] for edge in page.get("edges") or [])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return collection_ids
            after = info.get("endCursor")

    async def fetch_collection_products(self, collection_id: str) -> List[CatalogProduct]:
        products: List[CatalogProduct] = []
        after: Optional[str] = None
        while True:
            data = await self._query(COLLECTION_PRODUCTS_QUERY, {"id": collection_id, "after": after})
            collection = data.get("collection")
            if not collection:
                logger.warning("Collection %s not found on %s", collection_id, self.client.shop)
                return products
            page = collection.get("products") or {}
            products.extend(CatalogProduct.from_node(edge["node"]) for edge in page.get("edges") or [])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return products
            after = info.get("endCursor")

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.client.execute(query, variables)
        except ShopifyGraphQLError as e:
            raise RemoteError(self.resource, message=str(e)) from e
