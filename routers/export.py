"""
Export Router
Handles bundle export as JSON or CSV
"""
from fastapi import APIRouter, HTTPException, Depends, Response
from typing import Optional
import logging
import json
import csv
import io
from datetime import datetime

from routers.bundles import get_bundle_synchronizer
from services.discount_sync import DiscountSynchronizer
from services.errors import BundleSyncError
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()

CSV_COLUMNS = [
    "id", "name", "title", "status", "discountPercent",
    "products", "discountId", "createdAt", "updatedAt",
]


@router.get("/export/bundles")
async def export_bundles(
    shopId: Optional[str] = None,
    format: str = "json",
    synchronizer: DiscountSynchronizer = Depends(get_bundle_synchronizer),
):
    """Export bundles with their discount ids as JSON or CSV"""
    if format not in ("json", "csv"):
        raise HTTPException(status_code=400, detail="format must be 'json' or 'csv'")

    try:
        shop_id = resolve_shop_id(shopId)
        links = {link.bundle_id: link for link in await synchronizer.storage.list_discount_links(shop_id)}
        bundles = await synchronizer.bundles.list_bundles()

        rows = []
        for bundle in bundles:
            link = links.get(bundle.id)
            bundle.discount_id = link.discount_id if link else None
            rows.append(bundle.to_dict())

        if format == "csv":
            output = io.StringIO()
            writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow({
                    **row,
                    "products": ";".join(c["productId"] for c in row["components"]),
                })
            return Response(
                content=output.getvalue(),
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=bundles.csv"}
            )

        export_data = {
            "exportDate": datetime.now().isoformat(),
            "shopId": shop_id,
            "bundleCount": len(rows),
            "bundles": rows,
        }
        return Response(
            content=json.dumps(export_data, indent=2),
            media_type="application/json",
            headers={"Content-Disposition": "attachment; filename=bundles.json"}
        )

    except BundleSyncError:
        raise
    except Exception as e:
        logger.error(f"Export bundles error: {e}")
        raise HTTPException(status_code=500, detail="Failed to export bundles")
