"""
Error taxonomy for bundle/discount synchronisation.

Every error carries an HTTP-ish status code and a payload with the identifiers
a caller needs to retry or reconcile by hand (bundle id, discount id).
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class BundleSyncError(Exception):
    """Base exception for all bundle sync errors."""

    status_code = 500

    def __init__(
        self,
        message: str = "An internal error occurred",
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, Any]:
        rv = dict(self.payload)
        rv["error"] = type(self).__name__
        rv["message"] = self.message
        return rv


class ValidationError(BundleSyncError):
    """Malformed input, rejected before any remote call."""

    status_code = 400

    def __init__(self, errors: List[str], payload: Optional[Dict[str, Any]] = None):
        self.errors = list(errors)
        merged = dict(payload or {})
        merged["errors"] = self.errors
        super().__init__("; ".join(self.errors) or "Invalid input", payload=merged)


class RemoteError(BundleSyncError):
    """The commerce platform rejected an operation. No local state changed."""

    status_code = 502
    operation = "call"

    def __init__(
        self,
        resource: str,
        user_errors: Optional[List[str]] = None,
        *,
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.resource = resource
        self.resource_id = resource_id
        self.user_errors = list(user_errors or [])
        detail = message or ", ".join(self.user_errors) or "no detail returned"
        payload: Dict[str, Any] = {"resource": resource, "userErrors": self.user_errors}
        if resource_id:
            payload["resourceId"] = resource_id
        super().__init__(f"Failed to {self.operation} {resource}: {detail}", payload=payload)


class RemoteCreateError(RemoteError):
    operation = "create"


class RemoteUpdateError(RemoteError):
    operation = "update"


class RemoteDeleteError(RemoteError):
    operation = "delete"


class ConsistencyError(BundleSyncError):
    """Local and remote state diverged and compensation could not restore them."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        bundle_id: Optional[str] = None,
        discount_id: Optional[str] = None,
    ):
        self.bundle_id = bundle_id
        self.discount_id = discount_id
        super().__init__(message, payload={"bundleId": bundle_id, "discountId": discount_id})


class PartialUpdateError(BundleSyncError):
    """Old discount deleted, replacement not yet created. Safe to retry."""

    status_code = 503
    retryable = True

    def __init__(self, bundle_id: str, message: Optional[str] = None):
        self.bundle_id = bundle_id
        super().__init__(
            message or f"Discount for bundle {bundle_id} was removed but could not be recreated",
            payload={"bundleId": bundle_id, "retryable": True},
        )


class NotFoundError(BundleSyncError):
    """No DiscountLink, bundle, rule or recommendation for the given key."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", payload: Optional[Dict[str, Any]] = None):
        super().__init__(message, payload=payload)


class OrphanedRecordError(BundleSyncError):
    """DiscountLink missing where one was expected."""

    status_code = 409

    def __init__(self, bundle_id: str, message: Optional[str] = None):
        self.bundle_id = bundle_id
        super().__init__(
            message or f"No discount link recorded for bundle {bundle_id}",
            payload={"bundleId": bundle_id},
        )


class CorrelationWriteError(BundleSyncError):
    """Local correlation write failed; the remote objects were rolled back."""

    status_code = 500

    def __init__(self, bundle_name: str, cause: Exception):
        self.bundle_name = bundle_name
        super().__init__(
            f"Could not record discount link for bundle '{bundle_name}': {cause}",
            payload={"bundleName": bundle_name},
        )


class LockTimeoutError(BundleSyncError):
    """Another worker held the keyed mutex for too long. Safe to retry."""

    status_code = 503
    retryable = True

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Could not acquire lock for {key}", payload={"lockKey": key, "retryable": True})
