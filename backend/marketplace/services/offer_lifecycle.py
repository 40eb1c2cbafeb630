import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from marketplace.errors import (
    MarketplaceAuthError,
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from marketplace.models import VendorOffer, VendorOfferCreate, VendorOfferWithRequest
from marketplace.services.compliance import assert_vendor_eligible
from marketplace.services.expiration import ExpirationSweeper
from marketplace.services.marketplace_store import REQUEST_OPEN, MarketplaceStore, utcnow

logger = logging.getLogger(__name__)

OFFER_STATUS_CHOICES = {"accepted", "declined", "ignored", "pending"}


@dataclass(frozen=True)
class OfferActor:
    is_admin: bool = False
    customer_email: Optional[str] = None


class OfferLifecycle:
    def __init__(
        self,
        store: MarketplaceStore,
        sweeper: ExpirationSweeper,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._sweeper = sweeper
        self._clock = clock

    def create_offer(self, request_id: str, payload: VendorOfferCreate) -> VendorOffer:
        self._sweeper.sweep()
        vendor_name = (payload.vendor_name or "").strip()
        if not vendor_name or payload.price is None or Decimal(payload.price) <= 0:
            raise MarketplaceValidationError("Missing required fields", reason="missing_fields")

        request = self._store.get_request(request_id)
        if not request:
            raise MarketplaceNotFoundError("Request not found", reason="request_not_found")
        if request.status != REQUEST_OPEN:
            raise MarketplaceConflictError("Request is closed or expired", reason="request_closed")

        vendor_email = (payload.vendor_email or "").strip() or None
        if vendor_email:
            vendor = self._store.get_vendor_by_email(vendor_email)
            if not vendor:
                raise MarketplaceNotFoundError(
                    "Vendor account not found. Please finish vendor signup first.",
                    reason="vendor_not_found",
                )
            assert_vendor_eligible(vendor)

        # The store re-checks that the request is still open under its write lock.
        offer = self._store.insert_offer(
            request_id=request_id,
            vendor_name=vendor_name,
            vendor_email=vendor_email,
            price=Decimal(payload.price),
            message=(payload.message or "").strip(),
            now=self._clock(),
        )
        logger.info("offer_created request_id=%s offer_id=%s", request_id, offer.id)
        return offer

    def set_offer_status(
        self,
        request_id: str,
        offer_id: str,
        new_status: str,
        actor: OfferActor,
    ) -> Tuple[VendorOffer, str]:
        self._sweeper.sweep()
        if new_status not in OFFER_STATUS_CHOICES:
            raise MarketplaceValidationError("Invalid status", reason="invalid_status")

        request = self._store.get_request(request_id)
        if not request:
            raise MarketplaceNotFoundError("Request not found", reason="request_not_found")

        if not actor.is_admin:
            customer_email = (actor.customer_email or "").strip().lower()
            if not customer_email:
                raise MarketplaceAuthError(
                    "customerEmail is required for customer offer updates",
                    reason="customer_email_required",
                )
            if customer_email != request.customer_email.lower():
                raise MarketplacePermissionError(
                    "You can only manage offers for your own requests",
                    reason="not_request_owner",
                )

        return self._store.update_offer_status(
            request_id=request_id,
            offer_id=offer_id,
            status=new_status,
            now=self._clock(),
        )

    def list_vendor_offers(self, vendor_email: str) -> List[VendorOfferWithRequest]:
        cleaned = (vendor_email or "").strip()
        if not cleaned:
            raise MarketplaceValidationError("vendorEmail is required", reason="missing_fields")
        self._sweeper.sweep()
        results = []
        for offer, request in self._store.list_offers_for_vendor(cleaned):
            results.append(VendorOfferWithRequest(**offer.model_dump(), request=request))
        return results
