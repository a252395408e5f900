"""
Storefront event ingestion. Fire-and-forget: a failed write is logged and
reported as False, never raised to the storefront.
"""
import logging
from typing import Any, Dict, List, Optional

from services.analytics.event_aggregator import EVENT_TYPES
from services.errors import ValidationError
from services.storage import StorageService, storage as default_storage
from settings import resolve_shop_id

logger = logging.getLogger(__name__)


def validate_event(
    bundle_id: Optional[str],
    product_id: Optional[str],
    event_type: Optional[str],
    session_id: Optional[str],
) -> List[str]:
    errors = [
        f"Missing required field: {label}"
        for label, value in (
            ("bundleId", bundle_id),
            ("productId", product_id),
            ("eventType", event_type),
            ("sessionId", session_id),
        )
        if not value
    ]
    if event_type and event_type not in EVENT_TYPES:
        errors.append(f"Invalid event type: {event_type}. Must be one of: {', '.join(EVENT_TYPES)}")
    return errors


async def track_event(
    shop: Optional[str],
    bundle_id: str,
    product_id: str,
    event_type: str,
    session_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    variant_group_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    storage: Optional[StorageService] = None,
) -> bool:
    """
    Record one event.

    Raises:
        ValidationError: malformed event (checked before anything is written)

    Returns:
        True if stored, False if the write failed
    """
    errors = validate_event(bundle_id, product_id, event_type, session_id)
    if errors:
        raise ValidationError(errors)

    storage = storage or default_storage
    try:
        await storage.create_event({
            "shop": resolve_shop_id(shop),
            "bundle_id": bundle_id,
            "product_id": product_id,
            "event_type": event_type,
            "session_id": session_id,
            "variant_group_id": variant_group_id,
            "customer_id": customer_id,
            "metadata_json": metadata or {},
        })
    except Exception as e:
        logger.warning(f"Failed to track {event_type} event for bundle {bundle_id}: {e}")
        return False
    return True
