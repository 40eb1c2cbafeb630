from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from marketplace.auth import assert_actor_authorized
from marketplace.deps import get_payment_adapter, get_webhook_reconciler, raise_http_error
from marketplace.errors import MarketplaceError
from marketplace.models import CheckoutSessionCreateRequest, CheckoutSessionResponse, WebhookAck
from marketplace.services.payments import PaymentAdapter
from marketplace.services.webhooks import WebhookReconciler

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionCreateRequest,
    authorization: Optional[str] = Header(default=None),
    payments: PaymentAdapter = Depends(get_payment_adapter),
):
    assert_actor_authorized(actor_email=payload.customer_email, authorization=authorization)
    try:
        session = payments.create_checkout_session(payload)
        return CheckoutSessionResponse(session_id=session.id, url=session.url)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    # Signature verification needs the body exactly as sent.
    raw_body = await request.body()
    outcome = await run_in_threadpool(reconciler.handle_event, raw_body, stripe_signature)
    if not outcome.ok:
        raise HTTPException(
            status_code=outcome.status_code,
            detail={"error": outcome.error, "reason": outcome.error_kind},
        )
    return WebhookAck(received=True, event=outcome.event_type)
