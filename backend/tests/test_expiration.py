import sqlite3
from datetime import timedelta
from decimal import Decimal

from marketplace.models import ServiceRequestCreate, VendorOfferCreate
from marketplace.services.expiration import ExpirationSweeper
from marketplace.services.marketplace_store import isoformat_utc, utcnow
from marketplace.services.offer_lifecycle import OfferLifecycle
from marketplace.services.request_lifecycle import RequestLifecycle


def _backdate(store, request_id: str, hours: int = 1) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(
            "UPDATE service_requests SET expires_at = ? WHERE id = ?",
            (isoformat_utc(utcnow() - timedelta(hours=hours)), request_id),
        )
        conn.commit()
    finally:
        conn.close()


def test_overdue_request_is_expired_on_next_read(api, client, store):
    request = api.create_request(offerResponseHours=1)
    first = api.offer(request["id"])
    second = api.offer(request["id"])
    assert api.set_offer_status(request["id"], first["id"], "declined").status_code == 200
    _backdate(store, request["id"])

    response = client.get("/api/requests", params={"customerEmail": "clara@example.com"})
    assert response.status_code == 200
    listed = next(item for item in response.json()["requests"] if item["id"] == request["id"])
    assert listed["status"] == "expired"
    assert listed["closedReason"] == "time_limit"
    assert listed["closedAt"] is not None
    statuses = {offer["id"]: offer["status"] for offer in listed["offers"]}
    assert statuses == {first["id"]: "declined", second["id"]: "ignored"}

    open_ids = {item["id"] for item in client.get("/api/requests/open").json()["requests"]}
    assert request["id"] not in open_ids


def test_offer_on_expired_request_is_rejected(api, store):
    request = api.create_request()
    _backdate(store, request["id"])

    response = api.submit_offer(request["id"])
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "request_closed"
    assert api.get_request(request["id"])["status"] == "expired"


def test_status_change_on_expired_request_is_rejected(api, store):
    request = api.create_request()
    offer = api.offer(request["id"])
    _backdate(store, request["id"])

    response = api.set_offer_status(request["id"], offer["id"], "accepted")
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "request_closed"


def test_sweep_is_idempotent_and_skips_closed_requests(store):
    sweeper = ExpirationSweeper(store)
    requests = RequestLifecycle(store, sweeper)
    offers = OfferLifecycle(store, sweeper)

    def create():
        return requests.create_request(
            ServiceRequestCreate(
                customer_name="Clara",
                customer_email="clara@example.com",
                selected_services=["dj"],
                budget=Decimal("800"),
                offer_response_hours=2,
            )
        )

    stale = create()
    offers.create_offer(stale.id, VendorOfferCreate(vendor_name="DJ", price=Decimal("400")))
    fresh = create()

    later = utcnow() + timedelta(hours=1)
    assert sweeper.sweep(now=later).changed is False

    much_later = utcnow() + timedelta(hours=3)
    first = sweeper.sweep(now=much_later)
    assert set(first.expired_request_ids) == {stale.id, fresh.id}
    assert first.ignored_offer_count == 1

    second = sweeper.sweep(now=much_later)
    assert second.expired_request_ids == []
    assert second.ignored_offer_count == 0
    assert second.changed is False

    expired = store.get_request(stale.id)
    assert expired.status == "expired"
    assert expired.closed_reason == "time_limit"
    assert [offer.status for offer in expired.offers] == ["ignored"]


def test_accepted_request_is_never_expired(api, store):
    request = api.create_request()
    offer = api.offer(request["id"])
    assert api.set_offer_status(request["id"], offer["id"], "accepted").status_code == 200
    _backdate(store, request["id"], hours=5)

    stored = api.get_request(request["id"])
    assert stored["status"] == "closed"
    assert stored["closedReason"] == "offer_accepted"
    assert stored["offers"][0]["status"] == "accepted"
