from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from marketplace.auth import assert_actor_authorized, is_admin_request
from marketplace.deps import get_offer_lifecycle, get_request_lifecycle, raise_http_error
from marketplace.errors import MarketplaceError
from marketplace.models import (
    OfferEnvelope,
    OfferStatusResult,
    OfferStatusUpdateRequest,
    RequestEnvelope,
    RequestListEnvelope,
    ServiceRequestCreate,
    VendorOfferCreate,
    VendorOfferListEnvelope,
)
from marketplace.services.offer_lifecycle import OfferActor, OfferLifecycle
from marketplace.services.request_lifecycle import RequestLifecycle

router = APIRouter(prefix="/api", tags=["requests"])


@router.post("/requests", response_model=RequestEnvelope, status_code=201)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle),
):
    assert_actor_authorized(actor_email=payload.customer_email, authorization=authorization)
    try:
        return RequestEnvelope(request=lifecycle.create_request(payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/requests", response_model=RequestListEnvelope)
def list_requests(
    customer_email: Optional[str] = Query(default=None, alias="customerEmail"),
    authorization: Optional[str] = Header(default=None),
    x_admin_key: Optional[str] = Header(default=None),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle),
):
    if not is_admin_request(authorization=authorization, x_admin_key=x_admin_key):
        # Only admins may list across customers.
        if not (customer_email or "").strip():
            raise HTTPException(
                status_code=401,
                detail={"error": "customerEmail is required unless signed in as admin", "reason": "admin_required"},
            )
        assert_actor_authorized(actor_email=customer_email, authorization=authorization)
    try:
        return RequestListEnvelope(requests=lifecycle.list_requests(customer_email=customer_email))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/requests/open", response_model=RequestListEnvelope)
def list_open_requests(lifecycle: RequestLifecycle = Depends(get_request_lifecycle)):
    return RequestListEnvelope(requests=lifecycle.list_open_requests())


@router.get("/requests/{request_id}", response_model=RequestEnvelope)
def get_request(request_id: str, lifecycle: RequestLifecycle = Depends(get_request_lifecycle)):
    try:
        return RequestEnvelope(request=lifecycle.get_request(request_id))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/requests/{request_id}/offers", response_model=OfferEnvelope, status_code=201)
def create_offer(
    request_id: str,
    payload: VendorOfferCreate,
    authorization: Optional[str] = Header(default=None),
    offers: OfferLifecycle = Depends(get_offer_lifecycle),
):
    if payload.vendor_email:
        assert_actor_authorized(actor_email=payload.vendor_email, authorization=authorization)
    try:
        return OfferEnvelope(offer=offers.create_offer(request_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.patch("/requests/{request_id}/offers/{offer_id}", response_model=OfferStatusResult)
def update_offer_status(
    request_id: str,
    offer_id: str,
    payload: OfferStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
    x_admin_key: Optional[str] = Header(default=None),
    offers: OfferLifecycle = Depends(get_offer_lifecycle),
):
    is_admin = is_admin_request(authorization=authorization, x_admin_key=x_admin_key)
    if not is_admin and payload.customer_email:
        assert_actor_authorized(actor_email=payload.customer_email, authorization=authorization)
    try:
        offer, request_status = offers.set_offer_status(
            request_id,
            offer_id,
            payload.status,
            OfferActor(is_admin=is_admin, customer_email=payload.customer_email),
        )
        return OfferStatusResult(offer=offer, request_status=request_status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/vendor/offers", response_model=VendorOfferListEnvelope)
def list_vendor_offers(
    vendor_email: Optional[str] = Query(default=None, alias="vendorEmail"),
    authorization: Optional[str] = Header(default=None),
    offers: OfferLifecycle = Depends(get_offer_lifecycle),
):
    assert_actor_authorized(actor_email=vendor_email, authorization=authorization)
    try:
        return VendorOfferListEnvelope(offers=offers.list_vendor_offers(vendor_email or ""))
    except MarketplaceError as exc:
        raise_http_error(exc)
