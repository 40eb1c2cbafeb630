import hashlib
import hmac
import os
import sys
import tempfile
import time
from typing import Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
# Keep the module-level app away from the real data directory.
os.environ.setdefault(
    "MARKETPLACE_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="marketplace-tests-"), "default.sqlite3"),
)

import pytest
from fastapi.testclient import TestClient

from marketplace.auth import create_access_token
from marketplace.main import create_app
from marketplace.services.marketplace_store import MarketplaceStore
from marketplace.services.payment_gateway import CheckoutSession, StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    """Records checkout calls instead of reaching Stripe; webhook verification is the real one."""

    def __init__(self, secret_key: str = "sk_test_fake", webhook_secret: str = WEBHOOK_SECRET) -> None:
        super().__init__(secret_key=secret_key, webhook_secret=webhook_secret)
        self.created = []
        self.sessions = {}

    def create_checkout_session(self, params, *, idempotency_key):
        for call in self.created:
            if call["idempotency_key"] == idempotency_key:
                return self.sessions[call["session_id"]]
        number = len(self.created) + 1
        session = CheckoutSession(
            id=f"cs_test_{number}",
            url=f"https://checkout.stripe.test/pay/cs_test_{number}",
            status="open",
        )
        self.created.append({"params": params, "idempotency_key": idempotency_key, "session_id": session.id})
        self.sessions[session.id] = session
        return session

    def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def bearer(email: str, role: str = "customer") -> dict:
    token, _ = create_access_token(email=email, role=role)
    return {"Authorization": f"Bearer {token}"}


class MarketApi:
    def __init__(self, client: TestClient, store: MarketplaceStore) -> None:
        self.client = client
        self.store = store

    def create_request(self, customer_email: str = "clara@example.com", **overrides) -> dict:
        body = {
            "customerName": "Clara Event",
            "customerEmail": customer_email,
            "selectedServices": ["catering", "dj"],
            "budget": 2500,
            "offerResponseHours": 24,
        }
        body.update(overrides)
        response = self.client.post("/api/requests", json=body)
        assert response.status_code == 201, response.text
        return response.json()["request"]

    def register_vendor(self, email: str, *, eligible: bool = True, stripe_account_id: Optional[str] = None) -> dict:
        response = self.client.post(
            "/api/vendors",
            json={
                "businessName": f"Vendor {email.split('@')[0]}",
                "contactName": "Vic Vendor",
                "email": email,
                "stripeAccountId": stripe_account_id,
            },
        )
        assert response.status_code == 201, response.text
        if eligible:
            self.set_compliance(email, status="approved", contractAccepted=True, trainingCompleted=True)
        return response.json()["vendor"]

    def set_compliance(self, email: str, **flags) -> dict:
        response = self.client.patch(
            f"/api/admin/vendors/{email}/compliance",
            json=flags,
            headers=bearer("admin@example.com", role="admin"),
        )
        assert response.status_code == 200, response.text
        return response.json()

    def submit_offer(self, request_id: str, price=900, vendor_email: Optional[str] = None, vendor_name: str = "Vendor"):
        body = {"vendorName": vendor_name, "price": price, "message": "Happy to help"}
        if vendor_email:
            body["vendorEmail"] = vendor_email
        return self.client.post(f"/api/requests/{request_id}/offers", json=body)

    def offer(self, request_id: str, price=900, vendor_email: Optional[str] = None, vendor_name: str = "Vendor") -> dict:
        response = self.submit_offer(request_id, price=price, vendor_email=vendor_email, vendor_name=vendor_name)
        assert response.status_code == 201, response.text
        return response.json()["offer"]

    def set_offer_status(self, request_id: str, offer_id: str, status: str, customer_email: str = "clara@example.com"):
        return self.client.patch(
            f"/api/requests/{request_id}/offers/{offer_id}",
            json={"status": status, "customerEmail": customer_email},
        )

    def get_request(self, request_id: str) -> dict:
        response = self.client.get(f"/api/requests/{request_id}")
        assert response.status_code == 200, response.text
        return response.json()["request"]


@pytest.fixture
def auth_headers():
    return bearer


@pytest.fixture
def store(tmp_path):
    return MarketplaceStore(db_path=str(tmp_path / "marketplace.sqlite3"))


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def client(store, gateway):
    return TestClient(create_app(store=store, gateway=gateway))


@pytest.fixture
def api(client, store):
    return MarketApi(client, store)


@pytest.fixture
def signer():
    return sign_payload
