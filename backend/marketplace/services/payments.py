import hashlib
import json
import logging
import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from marketplace.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from marketplace.models import CheckoutSessionCreateRequest, ServiceRequest, VendorOffer
from marketplace.services.marketplace_store import MarketplaceStore
from marketplace.services.payment_gateway import CheckoutSession, StripeGateway

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_PERCENT = Decimal("15")


def _commission_percent_from_env() -> Decimal:
    raw = os.getenv("STRIPE_PLATFORM_COMMISSION_PERCENT", "").strip()
    if not raw:
        return DEFAULT_COMMISSION_PERCENT
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return DEFAULT_COMMISSION_PERCENT
    if not value.is_finite() or value < 0 or value > 100:
        return DEFAULT_COMMISSION_PERCENT
    return value


COMMISSION_PERCENT = _commission_percent_from_env()
CURRENCY = os.getenv("STRIPE_CURRENCY", "eur").strip().lower() or "eur"


@dataclass(frozen=True)
class CommissionSplit:
    amount_minor: int
    platform_fee_minor: int
    vendor_amount_minor: int


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_commission_split(price: Decimal, commission_percent: Decimal) -> CommissionSplit:
    """Split a charge between platform and vendor, in minor currency units.

    >>> compute_commission_split(Decimal("1000.00"), Decimal("15"))
    CommissionSplit(amount_minor=100000, platform_fee_minor=15000, vendor_amount_minor=85000)
    """
    amount_minor = to_minor_units(price)
    fee = (Decimal(amount_minor) * Decimal(commission_percent) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    fee_minor = min(max(int(fee), 0), amount_minor)
    return CommissionSplit(
        amount_minor=amount_minor,
        platform_fee_minor=fee_minor,
        vendor_amount_minor=amount_minor - fee_minor,
    )


class PaymentAdapter:
    def __init__(
        self,
        store: MarketplaceStore,
        gateway: Optional[StripeGateway],
        *,
        commission_percent: Decimal = COMMISSION_PERCENT,
        currency: str = CURRENCY,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self.commission_percent = Decimal(commission_percent)
        self.currency = currency

    def create_checkout_session(self, payload: CheckoutSessionCreateRequest) -> CheckoutSession:
        if not self._gateway or not self._gateway.checkout_enabled:
            raise MarketplaceValidationError("Stripe is not configured", reason="payments_not_configured")
        request_id = (payload.request_id or "").strip()
        offer_id = (payload.offer_id or "").strip()
        customer_email = (payload.customer_email or "").strip()
        success_url = (payload.success_url or "").strip()
        cancel_url = (payload.cancel_url or "").strip()
        if not request_id or not offer_id or not customer_email or not success_url or not cancel_url:
            raise MarketplaceValidationError("Missing required fields", reason="missing_fields")

        request = self._store.get_request(request_id)
        if not request:
            raise MarketplaceNotFoundError("Request not found", reason="request_not_found")
        if request.customer_email.lower() != customer_email.lower():
            raise MarketplacePermissionError("Customer email does not match request", reason="customer_mismatch")

        offer = next((item for item in request.offers if item.id == offer_id), None)
        if not offer:
            raise MarketplaceNotFoundError("Offer not found", reason="offer_not_found")
        if offer.status != "accepted":
            raise MarketplaceConflictError("Only accepted offers can be paid", reason="offer_not_accepted")
        if offer.payment_status == "paid":
            raise MarketplaceConflictError("This offer is already paid", reason="offer_already_paid")

        if offer.stripe_session_id:
            existing = self._gateway.retrieve_checkout_session(offer.stripe_session_id)
            if existing.status == "open" and existing.url:
                logger.info("checkout_session_reused offer_id=%s session_id=%s", offer.id, existing.id)
                return existing
            # A completed session is paid; the webhook just has not landed yet.
            if existing.status == "complete":
                raise MarketplaceConflictError(
                    "Payment for this offer is already being processed",
                    reason="payment_in_progress",
                )

        params = self.build_session_params(request, offer, customer_email, success_url, cancel_url)
        session = self._gateway.create_checkout_session(params, idempotency_key=self._idempotency_key(offer, params))
        if not self._store.record_checkout_session(request_id=request.id, offer_id=offer.id, session_id=session.id):
            raise MarketplaceConflictError("This offer is already paid", reason="offer_already_paid")
        logger.info(
            "checkout_session_created request_id=%s offer_id=%s session_id=%s split=%s",
            request.id,
            offer.id,
            session.id,
            "payment_intent_data" in params,
        )
        return session

    def build_session_params(
        self,
        request: ServiceRequest,
        offer: VendorOffer,
        customer_email: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        split = compute_commission_split(offer.price, self.commission_percent)
        services = ", ".join(request.selected_services) or "Service"
        params: Dict[str, Any] = {
            "mode": "payment",
            "customer_email": customer_email,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": split.amount_minor,
                        "product_data": {
                            "name": f"Event Offer {request.id}",
                            "description": f"{offer.vendor_name} | {services}",
                        },
                    },
                }
            ],
            "metadata": {
                "requestId": request.id,
                "offerId": offer.id,
                "vendorEmail": offer.vendor_email or "",
                "customerEmail": request.customer_email,
            },
        }
        destination = self._payout_destination(offer)
        if destination:
            params["payment_intent_data"] = {
                "application_fee_amount": split.platform_fee_minor,
                "transfer_data": {"destination": destination},
            }
        return params

    def _payout_destination(self, offer: VendorOffer) -> Optional[str]:
        if not offer.vendor_email:
            return None
        vendor = self._store.get_vendor_by_email(offer.vendor_email)
        if not vendor:
            return None
        return vendor.stripe_account_id

    def _idempotency_key(self, offer: VendorOffer, params: Dict[str, Any]) -> str:
        # Same offer, same previous session and same params reuse one key.
        digest = hashlib.sha256(json.dumps(params, sort_keys=True).encode("utf-8")).hexdigest()[:16]
        return f"offer-checkout:{offer.id}:{offer.stripe_session_id or 'initial'}:{digest}"
