from decimal import Decimal

import pytest
import stripe
from fastapi.testclient import TestClient

from marketplace.errors import PaymentUpstreamError
from marketplace.main import create_app
from marketplace.services.marketplace_store import utcnow
from marketplace.services.payment_gateway import StripeGateway
from marketplace.services.payments import compute_commission_split, to_minor_units


@pytest.mark.parametrize(
    "price, percent, expected",
    [
        (Decimal("1000.00"), Decimal("15"), (100000, 15000, 85000)),
        (Decimal("99.99"), Decimal("15"), (9999, 1500, 8499)),
        (Decimal("10"), Decimal("0"), (1000, 0, 1000)),
        (Decimal("10"), Decimal("100"), (1000, 1000, 0)),
    ],
)
def test_commission_split(price, percent, expected):
    split = compute_commission_split(price, percent)
    assert (split.amount_minor, split.platform_fee_minor, split.vendor_amount_minor) == expected
    assert split.platform_fee_minor + split.vendor_amount_minor == split.amount_minor


def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("12.345")) == 1235
    assert to_minor_units(Decimal("0.004")) == 0


def _accepted_offer(api, *, price=1000, vendor_email=None):
    request = api.create_request(customer_email="clara@example.com")
    offer = api.offer(request["id"], price=price, vendor_email=vendor_email, vendor_name="Sound & Light")
    assert api.set_offer_status(request["id"], offer["id"], "accepted").status_code == 200
    return request, offer


def _checkout(client, request, offer, customer_email="clara@example.com"):
    return client.post(
        "/api/payments/checkout-session",
        json={
            "requestId": request["id"],
            "offerId": offer["id"],
            "customerEmail": customer_email,
            "successUrl": "https://app.example.com/paid",
            "cancelUrl": "https://app.example.com/cancel",
        },
    )


def test_checkout_with_connected_vendor_splits_commission(api, client, gateway):
    api.register_vendor("dj@vendors.test", stripe_account_id="acct_123")
    request, offer = _accepted_offer(api, price=1000, vendor_email="dj@vendors.test")

    response = _checkout(client, request, offer)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["sessionId"] == "cs_test_1"
    assert body["url"].endswith("cs_test_1")

    params = gateway.created[0]["params"]
    assert params["mode"] == "payment"
    assert params["customer_email"] == "clara@example.com"
    line = params["line_items"][0]["price_data"]
    assert line["currency"] == "eur"
    assert line["unit_amount"] == 100000
    assert line["product_data"]["name"] == f"Event Offer {request['id']}"
    assert params["metadata"] == {
        "requestId": request["id"],
        "offerId": offer["id"],
        "vendorEmail": "dj@vendors.test",
        "customerEmail": "clara@example.com",
    }
    assert params["payment_intent_data"] == {
        "application_fee_amount": 15000,
        "transfer_data": {"destination": "acct_123"},
    }

    stored = api.get_request(request["id"])["offers"][0]
    assert stored["paymentStatus"] == "pending"
    assert stored["stripeSessionId"] == "cs_test_1"


def test_checkout_without_payout_destination_charges_platform_only(api, client, gateway):
    request, offer = _accepted_offer(api, price=250)

    response = _checkout(client, request, offer)
    assert response.status_code == 200
    params = gateway.created[0]["params"]
    assert "payment_intent_data" not in params
    assert params["line_items"][0]["price_data"]["unit_amount"] == 25000
    assert params["metadata"]["vendorEmail"] == ""


def test_repeat_checkout_reuses_open_session(api, client, gateway):
    request, offer = _accepted_offer(api)

    first = _checkout(client, request, offer)
    second = _checkout(client, request, offer)
    assert first.status_code == second.status_code == 200
    assert first.json()["sessionId"] == second.json()["sessionId"]
    assert len(gateway.created) == 1
    assert gateway.created[0]["idempotency_key"].startswith(f"offer-checkout:{offer['id']}:initial:")


def test_checkout_after_session_closed_creates_new_session(api, client, gateway):
    request, offer = _accepted_offer(api)
    first = _checkout(client, request, offer).json()
    gateway.sessions[first["sessionId"]].status = "expired"

    second = _checkout(client, request, offer)
    assert second.status_code == 200
    assert second.json()["sessionId"] != first["sessionId"]
    assert gateway.created[1]["idempotency_key"].startswith(f"offer-checkout:{offer['id']}:{first['sessionId']}:")


def test_checkout_after_completed_session_does_not_charge_again(api, client, gateway):
    request, offer = _accepted_offer(api)
    first = _checkout(client, request, offer).json()
    gateway.sessions[first["sessionId"]].status = "complete"

    second = _checkout(client, request, offer)
    assert second.status_code == 400
    assert second.json()["detail"]["reason"] == "payment_in_progress"
    assert len(gateway.created) == 1

    stored = api.get_request(request["id"])["offers"][0]
    assert stored["paymentStatus"] == "pending"
    assert stored["stripeSessionId"] == first["sessionId"]


def test_checkout_rejects_offer_that_is_not_accepted(api, client):
    request = api.create_request()
    offer = api.offer(request["id"])

    response = _checkout(client, request, offer)
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "Only accepted offers can be paid"


def test_checkout_rejects_paid_offer(api, client, store):
    request, offer = _accepted_offer(api)
    store.mark_offer_paid(
        request_id=request["id"],
        offer_id=offer["id"],
        session_id="cs_paid",
        payment_intent="pi_paid",
        paid_at=utcnow(),
    )

    response = _checkout(client, request, offer)
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "This offer is already paid"


def test_checkout_rejects_other_customer(api, client):
    request, offer = _accepted_offer(api)

    response = _checkout(client, request, offer, customer_email="mallory@example.com")
    assert response.status_code == 403


def test_checkout_unknown_request_and_offer(api, client):
    request, offer = _accepted_offer(api)

    missing_request = _checkout(client, {"id": "req_missing"}, offer)
    assert missing_request.status_code == 404
    missing_offer = _checkout(client, request, {"id": "off_missing"})
    assert missing_offer.status_code == 404


def test_checkout_missing_fields(client):
    response = client.post("/api/payments/checkout-session", json={"requestId": "req_1"})
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "missing_fields"


def test_checkout_without_processor_configuration(store):
    client = TestClient(create_app(store=store, gateway=StripeGateway("", "")))
    response = client.post(
        "/api/payments/checkout-session",
        json={
            "requestId": "req_1",
            "offerId": "off_1",
            "customerEmail": "clara@example.com",
            "successUrl": "https://app.example.com/paid",
            "cancelUrl": "https://app.example.com/cancel",
        },
    )
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "payments_not_configured"


def test_gateway_maps_connection_failures_to_retryable_error(monkeypatch):
    def unavailable(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", unavailable)
    with pytest.raises(PaymentUpstreamError) as excinfo:
        StripeGateway("sk_test_fake").create_checkout_session({"mode": "payment"}, idempotency_key="key-1")
    assert excinfo.value.status_code == 503
    assert excinfo.value.reason == "payment_processor_unavailable"
    assert excinfo.value.retryable is True


def test_gateway_maps_processor_errors_to_bad_gateway(monkeypatch):
    def rejected(**kwargs):
        raise stripe.InvalidRequestError("No such destination: acct_missing", "payment_intent_data")

    monkeypatch.setattr(stripe.checkout.Session, "create", rejected)
    with pytest.raises(PaymentUpstreamError) as excinfo:
        StripeGateway("sk_test_fake").create_checkout_session({"mode": "payment"}, idempotency_key="key-2")
    assert excinfo.value.status_code == 502
    assert excinfo.value.reason == "payment_processor_error"
    assert excinfo.value.retryable is False
    assert "acct_missing" in str(excinfo.value)
