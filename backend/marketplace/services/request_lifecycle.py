import math
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional

from marketplace.errors import MarketplaceNotFoundError, MarketplaceValidationError
from marketplace.models import ServiceRequest, ServiceRequestCreate
from marketplace.services.expiration import ExpirationSweeper
from marketplace.services.marketplace_store import REQUEST_OPEN, MarketplaceStore, utcnow

DEFAULT_RESPONSE_HOURS = 48
MIN_RESPONSE_HOURS = 1
MAX_RESPONSE_HOURS = 168


def normalize_response_hours(value: Any) -> int:
    """Clamp a requested response window into [1, 168] hours.

    Missing, zero or non-numeric input falls back to the 48 hour default.
    """
    if not value:
        return DEFAULT_RESPONSE_HOURS
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RESPONSE_HOURS
    if not math.isfinite(hours):
        return DEFAULT_RESPONSE_HOURS
    rounded = int(math.floor(hours + 0.5))
    return min(MAX_RESPONSE_HOURS, max(MIN_RESPONSE_HOURS, rounded))


def _normalize_optional(value: Optional[str], max_length: int = 255) -> Optional[str]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def _normalize_event_date(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned).isoformat()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00")).isoformat()
    except ValueError as exc:
        raise MarketplaceValidationError("eventDate must be an ISO-8601 date", reason="invalid_event_date") from exc


class RequestLifecycle:
    def __init__(
        self,
        store: MarketplaceStore,
        sweeper: ExpirationSweeper,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._sweeper = sweeper
        self._clock = clock

    def create_request(self, payload: ServiceRequestCreate) -> ServiceRequest:
        customer_name = (payload.customer_name or "").strip()
        customer_email = (payload.customer_email or "").strip()
        services: List[str] = []
        for item in payload.selected_services or []:
            cleaned = str(item).strip()
            if cleaned and cleaned not in services:
                services.append(cleaned)
        if not customer_name or not customer_email or not services or payload.budget is None:
            raise MarketplaceValidationError("Missing required fields", reason="missing_fields")
        budget = Decimal(payload.budget)
        if budget <= 0:
            raise MarketplaceValidationError("budget must be > 0", reason="invalid_budget")

        hours = normalize_response_hours(payload.offer_response_hours)
        created_at = self._clock()
        return self._store.insert_request(
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=_normalize_optional(payload.customer_phone, max_length=64),
            selected_services=services,
            budget=budget,
            event_date=_normalize_event_date(payload.event_date),
            address=_normalize_optional(payload.address),
            notes=(payload.notes or "").strip(),
            offer_response_hours=hours,
            created_at=created_at,
            expires_at=created_at + timedelta(hours=hours),
        )

    def list_requests(self, customer_email: Optional[str] = None) -> List[ServiceRequest]:
        self._sweeper.sweep()
        return self._store.list_requests(customer_email=(customer_email or "").strip() or None)

    def list_open_requests(self) -> List[ServiceRequest]:
        self._sweeper.sweep()
        return self._store.list_requests(status=REQUEST_OPEN)

    def get_request(self, request_id: str) -> ServiceRequest:
        self._sweeper.sweep()
        request = self._store.get_request(request_id)
        if not request:
            raise MarketplaceNotFoundError("Request not found", reason="request_not_found")
        return request
