import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from marketplace.errors import PaymentUpstreamError

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str] = None
    status: Optional[str] = None


class StripeGateway:
    """Thin boundary around the Stripe SDK.

    Translates SDK failures into ``PaymentUpstreamError`` so callers only
    deal with the marketplace error taxonomy. Connection failures and rate
    limits are flagged retryable; everything else carries Stripe's message.
    """

    def __init__(self, secret_key: str = "", webhook_secret: str = "") -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def checkout_enabled(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_secret)

    def create_checkout_session(self, params: Dict[str, Any], *, idempotency_key: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.exception("Stripe checkout session create unavailable")
            raise PaymentUpstreamError(
                "Payment processor is unavailable, please retry",
                reason="payment_processor_unavailable",
                status_code=503,
                retryable=True,
            ) from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session create failed")
            raise PaymentUpstreamError(f"Payment processor error: {exc.user_message or exc}") from exc
        return CheckoutSession(id=session.id, url=session.url, status=session.status)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.exception("Stripe checkout session retrieve unavailable")
            raise PaymentUpstreamError(
                "Payment processor is unavailable, please retry",
                reason="payment_processor_unavailable",
                status_code=503,
                retryable=True,
            ) from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session retrieve failed")
            raise PaymentUpstreamError(f"Payment processor error: {exc.user_message or exc}") from exc
        return CheckoutSession(id=session.id, url=session.url, status=session.status)

    def verify_signature(self, payload: bytes, signature: str) -> Optional[str]:
        """Check a webhook signature against the raw body; returns the failure reason or None."""
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            return "Payload is not valid UTF-8"
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as exc:
            return str(exc.user_message or exc)
        return None


def build_gateway() -> Optional[StripeGateway]:
    if not STRIPE_SECRET_KEY and not STRIPE_WEBHOOK_SECRET:
        logger.info("Payments disabled: STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET not set")
        return None
    return StripeGateway(secret_key=STRIPE_SECRET_KEY, webhook_secret=STRIPE_WEBHOOK_SECRET)
