import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List

from marketplace.errors import MarketplaceNotFoundError, MarketplacePermissionError, MarketplaceValidationError
from marketplace.models import (
    PublicVendorPost,
    Vendor,
    VendorPost,
    VendorPostCreateRequest,
    VendorPostUpdateRequest,
)
from marketplace.services.compliance import assert_vendor_eligible, can_publish
from marketplace.services.marketplace_store import MarketplaceStore, utcnow

logger = logging.getLogger(__name__)

EDITABLE_TEXT_FIELDS = ("title", "service_name", "description", "city")


def _clean(value: Any, max_length: int = 255) -> str:
    return str(value or "").strip()[:max_length]


def _validate_price(value: Any) -> None:
    if value is not None and Decimal(value) < 0:
        raise MarketplaceValidationError("basePrice must be >= 0", reason="invalid_price")


class VendorPostCatalog:
    """Service listings published by vendors that pass the compliance gate."""

    def __init__(self, store: MarketplaceStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def _vendor(self, vendor_email: str) -> Vendor:
        cleaned = (vendor_email or "").strip()
        if not cleaned:
            raise MarketplaceValidationError("vendorEmail is required", reason="missing_fields")
        vendor = self._store.get_vendor_by_email(cleaned)
        if not vendor:
            raise MarketplaceNotFoundError("Vendor profile not found", reason="vendor_not_found")
        return vendor

    def list_posts(self, vendor_email: str) -> List[VendorPost]:
        return self._store.list_posts_for_vendor(self._vendor(vendor_email).id)

    def list_public_posts(self) -> List[PublicVendorPost]:
        return [
            PublicVendorPost(**post.model_dump(), vendor_name=vendor.business_name)
            for post, vendor in self._store.list_active_posts()
            if can_publish(vendor)
        ]

    def create_post(self, payload: VendorPostCreateRequest) -> VendorPost:
        vendor = self._vendor(payload.vendor_email)
        assert_vendor_eligible(vendor)
        title = _clean(payload.title)
        service_name = _clean(payload.service_name)
        if not title or not service_name:
            raise MarketplaceValidationError("Missing required fields", reason="missing_fields")
        _validate_price(payload.base_price)
        post = self._store.insert_post(
            vendor_id=vendor.id,
            title=title,
            service_name=service_name,
            description=_clean(payload.description, max_length=2000) or None,
            city=_clean(payload.city) or None,
            base_price=payload.base_price,
            availability=payload.availability or {},
            is_active=payload.is_active is not False,
            now=self._clock(),
        )
        logger.info("vendor_post_created vendor_id=%s post_id=%s", vendor.id, post.id)
        return post

    def update_post(self, post_id: str, payload: VendorPostUpdateRequest) -> VendorPost:
        vendor = self._vendor(payload.vendor_email)
        assert_vendor_eligible(vendor)
        post = self._store.get_post(post_id)
        if not post:
            raise MarketplaceNotFoundError("Post not found", reason="post_not_found")
        if post.vendor_id != vendor.id:
            raise MarketplacePermissionError("You can only edit your own posts", reason="not_post_owner")

        changes: Dict[str, Any] = {}
        for field in EDITABLE_TEXT_FIELDS:
            value = getattr(payload, field)
            if value is None:
                continue
            cleaned = _clean(value, max_length=2000 if field == "description" else 255)
            if field in {"title", "service_name"} and not cleaned:
                raise MarketplaceValidationError(f"{field} must not be empty", reason="missing_fields")
            changes[field] = cleaned or None
        if payload.base_price is not None:
            _validate_price(payload.base_price)
            changes["base_price"] = payload.base_price
        if payload.availability is not None:
            changes["availability"] = payload.availability
        if payload.is_active is not None:
            changes["is_active"] = payload.is_active

        updated = self._store.update_post(post_id, vendor_id=vendor.id, changes=changes, now=self._clock())
        logger.info("vendor_post_updated vendor_id=%s post_id=%s fields=%s", vendor.id, post_id, sorted(changes))
        return updated
