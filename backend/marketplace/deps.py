from typing import NoReturn

from fastapi import HTTPException, Request

from marketplace.errors import MarketplaceError
from marketplace.services.offer_lifecycle import OfferLifecycle
from marketplace.services.payments import PaymentAdapter
from marketplace.services.request_lifecycle import RequestLifecycle
from marketplace.services.vendor_posts import VendorPostCatalog
from marketplace.services.vendor_registry import VendorRegistry
from marketplace.services.webhooks import WebhookReconciler


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail={"error": exc.message, "reason": exc.reason})


def get_request_lifecycle(request: Request) -> RequestLifecycle:
    return request.app.state.request_lifecycle


def get_offer_lifecycle(request: Request) -> OfferLifecycle:
    return request.app.state.offer_lifecycle


def get_vendor_registry(request: Request) -> VendorRegistry:
    return request.app.state.vendor_registry


def get_payment_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.payment_adapter


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.webhook_reconciler


def get_vendor_post_catalog(request: Request) -> VendorPostCatalog:
    return request.app.state.vendor_post_catalog
