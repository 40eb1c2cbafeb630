from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from marketplace.auth import assert_actor_authorized
from marketplace.deps import get_vendor_post_catalog, raise_http_error
from marketplace.errors import MarketplaceError
from marketplace.models import (
    PublicVendorPostListEnvelope,
    VendorPostCreateRequest,
    VendorPostEnvelope,
    VendorPostListEnvelope,
    VendorPostUpdateRequest,
)
from marketplace.services.vendor_posts import VendorPostCatalog

router = APIRouter(prefix="/api/vendor/posts", tags=["vendor-posts"])


@router.get("", response_model=VendorPostListEnvelope)
def list_vendor_posts(
    vendor_email: Optional[str] = Query(default=None, alias="vendorEmail"),
    authorization: Optional[str] = Header(default=None),
    catalog: VendorPostCatalog = Depends(get_vendor_post_catalog),
):
    assert_actor_authorized(actor_email=vendor_email, authorization=authorization)
    try:
        return VendorPostListEnvelope(posts=catalog.list_posts(vendor_email or ""))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/public", response_model=PublicVendorPostListEnvelope)
def list_public_posts(catalog: VendorPostCatalog = Depends(get_vendor_post_catalog)):
    return PublicVendorPostListEnvelope(posts=catalog.list_public_posts())


@router.post("", response_model=VendorPostEnvelope, status_code=201)
def create_vendor_post(
    payload: VendorPostCreateRequest,
    authorization: Optional[str] = Header(default=None),
    catalog: VendorPostCatalog = Depends(get_vendor_post_catalog),
):
    assert_actor_authorized(actor_email=payload.vendor_email, authorization=authorization)
    try:
        return VendorPostEnvelope(post=catalog.create_post(payload))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.patch("/{post_id}", response_model=VendorPostEnvelope)
def update_vendor_post(
    post_id: str,
    payload: VendorPostUpdateRequest,
    authorization: Optional[str] = Header(default=None),
    catalog: VendorPostCatalog = Depends(get_vendor_post_catalog),
):
    assert_actor_authorized(actor_email=payload.vendor_email, authorization=authorization)
    try:
        return VendorPostEnvelope(post=catalog.update_post(post_id, payload))
    except MarketplaceError as exc:
        raise_http_error(exc)
