import logging
from datetime import datetime
from typing import Callable, Tuple

from marketplace.errors import MarketplaceNotFoundError, MarketplaceValidationError
from marketplace.models import Vendor, VendorCompliance, VendorComplianceUpdateRequest, VendorCreateRequest
from marketplace.services.compliance import compliance_view
from marketplace.services.marketplace_store import MarketplaceStore, utcnow

logger = logging.getLogger(__name__)


class VendorRegistry:
    def __init__(self, store: MarketplaceStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def register_vendor(self, payload: VendorCreateRequest) -> Tuple[Vendor, VendorCompliance]:
        business_name = (payload.business_name or "").strip()
        contact_name = (payload.contact_name or "").strip() or business_name
        email = (payload.email or "").strip()
        if not business_name or not email:
            raise MarketplaceValidationError("Missing required fields", reason="missing_fields")
        if "@" not in email:
            raise MarketplaceValidationError("email must be a valid address", reason="invalid_email")
        vendor = self._store.insert_vendor(
            business_name=business_name,
            contact_name=contact_name,
            email=email,
            stripe_account_id=(payload.stripe_account_id or "").strip() or None,
            now=self._clock(),
        )
        logger.info("vendor_registered vendor_id=%s", vendor.id)
        return vendor, compliance_view(vendor)

    def get_vendor(self, email: str) -> Tuple[Vendor, VendorCompliance]:
        vendor = self._store.get_vendor_by_email(email)
        if not vendor:
            raise MarketplaceNotFoundError("Vendor not found", reason="vendor_not_found")
        return vendor, compliance_view(vendor)

    def update_compliance(self, email: str, update: VendorComplianceUpdateRequest) -> Tuple[Vendor, VendorCompliance]:
        vendor = self._store.update_vendor_compliance(
            email,
            status=update.status,
            contract_accepted=update.contract_accepted,
            training_completed=update.training_completed,
            stripe_account_id=update.stripe_account_id,
            now=self._clock(),
        )
        view = compliance_view(vendor)
        logger.info(
            "vendor_compliance_updated vendor_id=%s status=%s can_publish=%s",
            vendor.id,
            vendor.status,
            view.can_publish,
        )
        return vendor, view
