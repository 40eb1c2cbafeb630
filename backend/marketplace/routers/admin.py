from fastapi import APIRouter, Depends

from marketplace.auth import require_admin
from marketplace.deps import get_request_lifecycle, get_vendor_registry, raise_http_error
from marketplace.errors import MarketplaceError
from marketplace.models import RequestListEnvelope, VendorComplianceUpdateRequest, VendorEnvelope
from marketplace.services.request_lifecycle import RequestLifecycle
from marketplace.services.vendor_registry import VendorRegistry

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/requests", response_model=RequestListEnvelope)
def list_all_requests(lifecycle: RequestLifecycle = Depends(get_request_lifecycle)):
    return RequestListEnvelope(requests=lifecycle.list_requests())


@router.patch("/vendors/{email}/compliance", response_model=VendorEnvelope)
def update_vendor_compliance(
    email: str,
    payload: VendorComplianceUpdateRequest,
    registry: VendorRegistry = Depends(get_vendor_registry),
):
    try:
        vendor, compliance = registry.update_compliance(email, payload)
        return VendorEnvelope(vendor=vendor, compliance=compliance)
    except MarketplaceError as exc:
        raise_http_error(exc)
