import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from marketplace.services.marketplace_store import MarketplaceStore, utcnow
from marketplace.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"


@dataclass
class WebhookOutcome:
    """Result of handling one processor callback.

    ``ok`` outcomes are acknowledged to the processor; failures carry an
    ``error_kind`` of ``not_configured``, ``missing_signature``,
    ``bad_signature`` or ``bad_payload`` and never mutate state.
    """

    ok: bool
    event_type: Optional[str] = None
    updated: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error_kind: str, error: str) -> "WebhookOutcome":
        return cls(ok=False, error_kind=error_kind, error=error)

    @property
    def status_code(self) -> int:
        return 200 if self.ok else 400


def _session_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data")
    if not isinstance(data, dict):
        return {}
    obj = data.get("object")
    return obj if isinstance(obj, dict) else {}


def _payment_intent_id(session: Dict[str, Any]) -> Optional[str]:
    value = session.get("payment_intent")
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


class WebhookReconciler:
    def __init__(
        self,
        store: MarketplaceStore,
        gateway: Optional[StripeGateway],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._clock = clock

    def handle_event(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        if not self._gateway or not self._gateway.webhook_enabled:
            return WebhookOutcome.failure("not_configured", "Stripe webhook is not configured")
        if not signature_header:
            return WebhookOutcome.failure("missing_signature", "Missing stripe signature")

        signature_error = self._gateway.verify_signature(raw_payload, signature_header)
        if signature_error:
            logger.warning("Webhook signature rejected: %s", signature_error)
            return WebhookOutcome.failure("bad_signature", f"Webhook signature verification failed: {signature_error}")

        try:
            event = json.loads(raw_payload)
        except ValueError:
            return WebhookOutcome.failure("bad_payload", "Webhook payload is not valid JSON")
        if not isinstance(event, dict):
            return WebhookOutcome.failure("bad_payload", "Webhook payload must be a JSON object")

        event_type = str(event.get("type") or "")
        session = _session_object(event)
        metadata = session.get("metadata") if isinstance(session.get("metadata"), dict) else {}
        request_id = str(metadata.get("requestId") or "")
        offer_id = str(metadata.get("offerId") or "")
        session_id = session.get("id") if isinstance(session.get("id"), str) else None

        updated = 0
        if event_type == CHECKOUT_COMPLETED and request_id and offer_id:
            updated = self._store.mark_offer_paid(
                request_id=request_id,
                offer_id=offer_id,
                session_id=session_id,
                payment_intent=_payment_intent_id(session),
                paid_at=self._clock(),
            )
        elif event_type == CHECKOUT_EXPIRED and request_id and offer_id:
            updated = self._store.mark_offer_failed(
                request_id=request_id,
                offer_id=offer_id,
                session_id=session_id,
            )

        logger.info(
            "webhook_reconciled event_id=%s type=%s request_id=%s offer_id=%s updated=%d",
            event.get("id"),
            event_type,
            request_id or "-",
            offer_id or "-",
            updated,
        )
        return WebhookOutcome(ok=True, event_type=event_type, updated=updated)
