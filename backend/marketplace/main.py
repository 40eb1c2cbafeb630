import os
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from marketplace.routers import admin, payments, service_requests, vendor_posts, vendors
from marketplace.services.expiration import ExpirationSweeper
from marketplace.services.marketplace_store import MarketplaceStore
from marketplace.services.offer_lifecycle import OfferLifecycle
from marketplace.services.payment_gateway import StripeGateway, build_gateway
from marketplace.services.payments import PaymentAdapter
from marketplace.services.request_lifecycle import RequestLifecycle
from marketplace.services.vendor_posts import VendorPostCatalog
from marketplace.services.vendor_registry import VendorRegistry
from marketplace.services.webhooks import WebhookReconciler

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "marketplace.sqlite3")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def create_app(
    store: Optional[MarketplaceStore] = None,
    gateway: Optional[StripeGateway] = None,
) -> FastAPI:
    app = FastAPI(title="Event Marketplace API", version="0.1.0")

    cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    store = store or MarketplaceStore(db_path=os.getenv("MARKETPLACE_DB_PATH", DEFAULT_DB_PATH))
    if gateway is None:
        gateway = build_gateway()
    sweeper = ExpirationSweeper(store)
    app.state.store = store
    app.state.request_lifecycle = RequestLifecycle(store, sweeper)
    app.state.offer_lifecycle = OfferLifecycle(store, sweeper)
    app.state.vendor_registry = VendorRegistry(store)
    app.state.vendor_post_catalog = VendorPostCatalog(store)
    app.state.payment_adapter = PaymentAdapter(store, gateway)
    app.state.webhook_reconciler = WebhookReconciler(store, gateway)

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"detail": {"error": "Invalid request body", "reason": "invalid_body", "fields": fields}},
        )

    app.include_router(service_requests.router)
    app.include_router(vendors.router)
    app.include_router(vendor_posts.router)
    app.include_router(admin.router)
    app.include_router(payments.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "event-marketplace-api"}

    return app


app = create_app()
