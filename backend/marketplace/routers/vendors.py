from typing import Optional

from fastapi import APIRouter, Depends, Header

from marketplace.auth import assert_actor_authorized
from marketplace.deps import get_vendor_registry, raise_http_error
from marketplace.errors import MarketplaceError
from marketplace.models import ComplianceEnvelope, VendorCreateRequest, VendorEnvelope
from marketplace.services.vendor_registry import VendorRegistry

router = APIRouter(prefix="/api/vendors", tags=["vendors"])


@router.post("", response_model=VendorEnvelope, status_code=201)
def register_vendor(
    payload: VendorCreateRequest,
    authorization: Optional[str] = Header(default=None),
    registry: VendorRegistry = Depends(get_vendor_registry),
):
    assert_actor_authorized(actor_email=payload.email, authorization=authorization)
    try:
        vendor, compliance = registry.register_vendor(payload)
        return VendorEnvelope(vendor=vendor, compliance=compliance)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{email}/compliance", response_model=ComplianceEnvelope)
def vendor_compliance(email: str, registry: VendorRegistry = Depends(get_vendor_registry)):
    try:
        _, compliance = registry.get_vendor(email)
        return ComplianceEnvelope(compliance=compliance)
    except MarketplaceError as exc:
        raise_http_error(exc)
