import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from marketplace.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
)
from marketplace.models import ServiceRequest, Vendor, VendorOffer, VendorPost

logger = logging.getLogger(__name__)

# Fixed width so stored timestamps compare correctly as strings.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

REQUEST_OPEN = "open"
REQUEST_CLOSED = "closed"
REQUEST_EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


@dataclass
class MarketplaceStore:
    """sqlite3-backed repository for vendors, service requests and offers.

    Every multi-row mutation runs inside :meth:`transaction`, which holds the
    process lock and a ``BEGIN IMMEDIATE`` write lock on the database file,
    so state checks and the writes that depend on them cannot interleave
    with another writer.
    """

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vendors (
                    id TEXT PRIMARY KEY,
                    business_name TEXT NOT NULL,
                    contact_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    email_lower TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending_review',
                    contract_accepted INTEGER NOT NULL DEFAULT 0,
                    contract_accepted_at TEXT,
                    training_completed INTEGER NOT NULL DEFAULT 0,
                    training_completed_at TEXT,
                    stripe_account_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_requests (
                    id TEXT PRIMARY KEY,
                    customer_name TEXT NOT NULL,
                    customer_email TEXT NOT NULL,
                    customer_phone TEXT,
                    selected_services_json TEXT NOT NULL,
                    budget TEXT NOT NULL,
                    event_date TEXT,
                    address TEXT,
                    notes TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'open',
                    offer_response_hours INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    closed_at TEXT,
                    closed_reason TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vendor_offers (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests(id),
                    vendor_name TEXT NOT NULL,
                    vendor_email TEXT,
                    price TEXT NOT NULL,
                    message TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'pending',
                    payment_status TEXT NOT NULL DEFAULT 'unpaid',
                    stripe_session_id TEXT,
                    stripe_payment_intent TEXT,
                    paid_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vendor_posts (
                    id TEXT PRIMARY KEY,
                    vendor_id TEXT NOT NULL REFERENCES vendors(id),
                    title TEXT NOT NULL,
                    service_name TEXT NOT NULL,
                    description TEXT,
                    city TEXT,
                    base_price TEXT,
                    availability_json TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_service_requests_customer ON service_requests (customer_email COLLATE NOCASE)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_vendor_posts_vendor ON vendor_posts (vendor_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_service_requests_status ON service_requests (status, expires_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_vendor_offers_request ON vendor_offers (request_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_vendor_offers_vendor ON vendor_offers (vendor_email COLLATE NOCASE)")

    # -- row mapping -------------------------------------------------------

    def _vendor_from_row(self, row: sqlite3.Row) -> Vendor:
        return Vendor(
            id=row["id"],
            business_name=row["business_name"],
            contact_name=row["contact_name"],
            email=row["email"],
            status=row["status"],
            contract_accepted=bool(row["contract_accepted"]),
            contract_accepted_at=row["contract_accepted_at"],
            training_completed=bool(row["training_completed"]),
            training_completed_at=row["training_completed_at"],
            stripe_account_id=row["stripe_account_id"],
            created_at=row["created_at"],
        )

    def _offer_from_row(self, row: sqlite3.Row) -> VendorOffer:
        return VendorOffer(
            id=row["id"],
            request_id=row["request_id"],
            vendor_name=row["vendor_name"],
            vendor_email=row["vendor_email"],
            price=Decimal(row["price"]),
            message=row["message"] or "",
            status=row["status"],
            payment_status=row["payment_status"] or "unpaid",
            stripe_session_id=row["stripe_session_id"],
            stripe_payment_intent=row["stripe_payment_intent"],
            paid_at=row["paid_at"],
            created_at=row["created_at"],
        )

    def _request_from_row(self, row: sqlite3.Row, offers: Optional[List[VendorOffer]] = None) -> ServiceRequest:
        try:
            selected_services = json.loads(row["selected_services_json"])
        except json.JSONDecodeError:
            selected_services = []
        return ServiceRequest(
            id=row["id"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"],
            selected_services=selected_services if isinstance(selected_services, list) else [],
            budget=Decimal(row["budget"]),
            event_date=row["event_date"],
            address=row["address"],
            notes=row["notes"] or "",
            status=row["status"],
            offer_response_hours=int(row["offer_response_hours"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            closed_at=row["closed_at"],
            closed_reason=row["closed_reason"],
            offers=offers or [],
        )

    def _offers_for_request(self, conn: sqlite3.Connection, request_id: str) -> List[VendorOffer]:
        rows = conn.execute(
            """
            SELECT *
            FROM vendor_offers
            WHERE request_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (request_id,),
        ).fetchall()
        return [self._offer_from_row(row) for row in rows]

    def _load_request(self, conn: sqlite3.Connection, request_id: str) -> Optional[ServiceRequest]:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            return None
        return self._request_from_row(row, self._offers_for_request(conn, request_id))

    # -- vendors -----------------------------------------------------------

    def insert_vendor(
        self,
        *,
        business_name: str,
        contact_name: str,
        email: str,
        stripe_account_id: Optional[str],
        now: datetime,
    ) -> Vendor:
        vendor_id = f"ven_{uuid4().hex[:12]}"
        with self.transaction() as conn:
            existing = conn.execute("SELECT id FROM vendors WHERE email_lower = ?", (email.lower(),)).fetchone()
            if existing:
                raise MarketplaceConflictError(
                    "A vendor with this email already exists",
                    reason="vendor_exists",
                    status_code=409,
                )
            conn.execute(
                """
                INSERT INTO vendors (
                    id, business_name, contact_name, email, email_lower, status,
                    contract_accepted, training_completed, stripe_account_id, created_at
                ) VALUES (?, ?, ?, ?, ?, 'pending_review', 0, 0, ?, ?)
                """,
                (vendor_id, business_name, contact_name, email, email.lower(), stripe_account_id, isoformat_utc(now)),
            )
            row = conn.execute("SELECT * FROM vendors WHERE id = ?", (vendor_id,)).fetchone()
        return self._vendor_from_row(row)

    def get_vendor_by_email(self, email: str) -> Optional[Vendor]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM vendors WHERE email_lower = ?", (email.strip().lower(),)).fetchone()
        return self._vendor_from_row(row) if row else None

    def update_vendor_compliance(
        self,
        email: str,
        *,
        status: Optional[str],
        contract_accepted: Optional[bool],
        training_completed: Optional[bool],
        stripe_account_id: Optional[str],
        now: datetime,
    ) -> Vendor:
        now_iso = isoformat_utc(now)
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM vendors WHERE email_lower = ?", (email.strip().lower(),)).fetchone()
            if not row:
                raise MarketplaceNotFoundError("Vendor not found", reason="vendor_not_found")
            vendor = self._vendor_from_row(row)
            updates = {}
            if status is not None:
                updates["status"] = status
            if contract_accepted is not None:
                updates["contract_accepted"] = int(contract_accepted)
                if contract_accepted and not vendor.contract_accepted:
                    updates["contract_accepted_at"] = now_iso
                elif not contract_accepted:
                    updates["contract_accepted_at"] = None
            if training_completed is not None:
                updates["training_completed"] = int(training_completed)
                if training_completed and not vendor.training_completed:
                    updates["training_completed_at"] = now_iso
                elif not training_completed:
                    updates["training_completed_at"] = None
            if stripe_account_id is not None:
                updates["stripe_account_id"] = stripe_account_id.strip() or None
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE vendors SET {assignments} WHERE id = ?",
                    (*updates.values(), vendor.id),
                )
            row = conn.execute("SELECT * FROM vendors WHERE id = ?", (vendor.id,)).fetchone()
        return self._vendor_from_row(row)

    # -- vendor posts ------------------------------------------------------

    def _post_from_row(self, row: sqlite3.Row) -> VendorPost:
        try:
            availability = json.loads(row["availability_json"] or "{}")
        except json.JSONDecodeError:
            availability = {}
        return VendorPost(
            id=row["id"],
            vendor_id=row["vendor_id"],
            title=row["title"],
            service_name=row["service_name"],
            description=row["description"],
            city=row["city"],
            base_price=Decimal(row["base_price"]) if row["base_price"] is not None else None,
            availability=availability if isinstance(availability, dict) else {},
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_post(
        self,
        *,
        vendor_id: str,
        title: str,
        service_name: str,
        description: Optional[str],
        city: Optional[str],
        base_price: Optional[Decimal],
        availability: Dict[str, Any],
        is_active: bool,
        now: datetime,
    ) -> VendorPost:
        post_id = f"post_{uuid4().hex[:12]}"
        now_iso = isoformat_utc(now)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO vendor_posts (
                    id, vendor_id, title, service_name, description, city, base_price,
                    availability_json, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    post_id,
                    vendor_id,
                    title,
                    service_name,
                    description,
                    city,
                    str(base_price) if base_price is not None else None,
                    json.dumps(availability),
                    int(is_active),
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute("SELECT * FROM vendor_posts WHERE id = ?", (post_id,)).fetchone()
        return self._post_from_row(row)

    def get_post(self, post_id: str) -> Optional[VendorPost]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM vendor_posts WHERE id = ?", (post_id,)).fetchone()
        return self._post_from_row(row) if row else None

    def update_post(self, post_id: str, *, vendor_id: str, changes: Dict[str, Any], now: datetime) -> VendorPost:
        columns = dict(changes)
        if "base_price" in columns and columns["base_price"] is not None:
            columns["base_price"] = str(columns["base_price"])
        if "availability" in columns:
            columns["availability_json"] = json.dumps(columns.pop("availability") or {})
        if "is_active" in columns:
            columns["is_active"] = int(columns["is_active"])
        columns["updated_at"] = isoformat_utc(now)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self.transaction() as conn:
            updated = conn.execute(
                f"UPDATE vendor_posts SET {assignments} WHERE id = ? AND vendor_id = ?",
                (*columns.values(), post_id, vendor_id),
            ).rowcount
            if not updated:
                raise MarketplaceNotFoundError("Post not found", reason="post_not_found")
            row = conn.execute("SELECT * FROM vendor_posts WHERE id = ?", (post_id,)).fetchone()
        return self._post_from_row(row)

    def list_posts_for_vendor(self, vendor_id: str) -> List[VendorPost]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM vendor_posts WHERE vendor_id = ? ORDER BY created_at DESC, rowid DESC",
                (vendor_id,),
            ).fetchall()
        return [self._post_from_row(row) for row in rows]

    def list_active_posts(self) -> List[Tuple[VendorPost, Vendor]]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT p.*, v.id AS owner_id
                FROM vendor_posts p
                JOIN vendors v ON v.id = p.vendor_id
                WHERE p.is_active = 1
                ORDER BY p.created_at DESC, p.rowid DESC
                """
            ).fetchall()
            results = []
            for row in rows:
                vendor_row = conn.execute("SELECT * FROM vendors WHERE id = ?", (row["owner_id"],)).fetchone()
                results.append((self._post_from_row(row), self._vendor_from_row(vendor_row)))
        return results

    # -- requests ----------------------------------------------------------

    def insert_request(
        self,
        *,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str],
        selected_services: List[str],
        budget: Decimal,
        event_date: Optional[str],
        address: Optional[str],
        notes: str,
        offer_response_hours: int,
        created_at: datetime,
        expires_at: datetime,
    ) -> ServiceRequest:
        request_id = f"req_{uuid4().hex[:12]}"
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, customer_name, customer_email, customer_phone, selected_services_json, budget,
                    event_date, address, notes, status, offer_response_hours, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', ?, ?, ?)
                """,
                (
                    request_id,
                    customer_name,
                    customer_email,
                    customer_phone,
                    json.dumps(selected_services),
                    str(budget),
                    event_date,
                    address,
                    notes,
                    offer_response_hours,
                    isoformat_utc(created_at),
                    isoformat_utc(expires_at),
                ),
            )
            created = self._load_request(conn, request_id)
        if not created:
            raise MarketplaceNotFoundError("Request not found after create", reason="request_not_found")
        return created

    def get_request(self, request_id: str) -> Optional[ServiceRequest]:
        with self._reader() as conn:
            return self._load_request(conn, request_id)

    def list_requests(self, *, customer_email: Optional[str] = None, status: Optional[str] = None) -> List[ServiceRequest]:
        clauses = []
        params: List[str] = []
        if customer_email:
            clauses.append("customer_email = ? COLLATE NOCASE")
            params.append(customer_email)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM service_requests {where} ORDER BY created_at DESC, rowid DESC",
                params,
            ).fetchall()
            return [self._request_from_row(row, self._offers_for_request(conn, row["id"])) for row in rows]

    def expire_stale_requests(self, now: datetime) -> Tuple[List[str], int]:
        """Expire overdue open requests and ignore the pending offers on them.

        Both updates share one transaction. Returns the ids of requests that
        were expired by this call and the number of offers moved to ignored.
        """
        now_iso = isoformat_utc(now)
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM service_requests WHERE status = 'open' AND expires_at < ?",
                (now_iso,),
            ).fetchall()
            expired_ids = [str(row["id"]) for row in rows]
            if expired_ids:
                conn.execute(
                    """
                    UPDATE service_requests
                    SET status = 'expired', closed_at = ?, closed_reason = 'time_limit'
                    WHERE status = 'open' AND expires_at < ?
                    """,
                    (now_iso, now_iso),
                )
            ignored = conn.execute(
                """
                UPDATE vendor_offers
                SET status = 'ignored'
                WHERE status = 'pending'
                  AND request_id IN (SELECT id FROM service_requests WHERE status = 'expired')
                """
            ).rowcount
        return expired_ids, ignored

    # -- offers ------------------------------------------------------------

    def insert_offer(
        self,
        *,
        request_id: str,
        vendor_name: str,
        vendor_email: Optional[str],
        price: Decimal,
        message: str,
        now: datetime,
    ) -> VendorOffer:
        offer_id = f"off_{uuid4().hex[:12]}"
        with self.transaction() as conn:
            request_row = conn.execute("SELECT status FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not request_row:
                raise MarketplaceNotFoundError("Request not found", reason="request_not_found")
            if str(request_row["status"]) != REQUEST_OPEN:
                raise MarketplaceConflictError("Request is closed or expired", reason="request_closed")
            conn.execute(
                """
                INSERT INTO vendor_offers (
                    id, request_id, vendor_name, vendor_email, price, message, status, payment_status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending', 'unpaid', ?)
                """,
                (offer_id, request_id, vendor_name, vendor_email, str(price), message, isoformat_utc(now)),
            )
            row = conn.execute("SELECT * FROM vendor_offers WHERE id = ?", (offer_id,)).fetchone()
        return self._offer_from_row(row)

    def get_offer(self, request_id: str, offer_id: str) -> Optional[VendorOffer]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM vendor_offers WHERE id = ? AND request_id = ?",
                (offer_id, request_id),
            ).fetchone()
        return self._offer_from_row(row) if row else None

    def list_offers_for_vendor(self, vendor_email: str) -> List[Tuple[VendorOffer, ServiceRequest]]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT o.*, r.id AS parent_id
                FROM vendor_offers o
                JOIN service_requests r ON r.id = o.request_id
                WHERE o.vendor_email = ? COLLATE NOCASE
                ORDER BY o.created_at DESC, o.rowid DESC
                """,
                (vendor_email,),
            ).fetchall()
            results = []
            for row in rows:
                request_row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (row["parent_id"],)).fetchone()
                results.append((self._offer_from_row(row), self._request_from_row(request_row)))
        return results

    def update_offer_status(
        self,
        *,
        request_id: str,
        offer_id: str,
        status: str,
        now: datetime,
    ) -> Tuple[VendorOffer, str]:
        """Apply an offer status change, cascading when the offer is accepted.

        The request must still be open when the write lock is held; a second
        accept racing the first therefore sees ``closed`` and is rejected.
        """
        with self.transaction() as conn:
            request_row = conn.execute("SELECT status FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not request_row:
                raise MarketplaceNotFoundError("Request not found", reason="request_not_found")
            if str(request_row["status"]) != REQUEST_OPEN:
                raise MarketplaceConflictError("Request is closed or expired", reason="request_closed")
            offer_row = conn.execute(
                "SELECT * FROM vendor_offers WHERE id = ? AND request_id = ?",
                (offer_id, request_id),
            ).fetchone()
            if not offer_row:
                raise MarketplaceNotFoundError("Offer not found", reason="offer_not_found")
            if str(offer_row["payment_status"]) == "paid":
                raise MarketplaceConflictError("This offer is already paid", reason="offer_already_paid", status_code=409)

            conn.execute("UPDATE vendor_offers SET status = ? WHERE id = ?", (status, offer_id))
            request_status = REQUEST_OPEN
            if status == "accepted":
                conn.execute(
                    """
                    UPDATE service_requests
                    SET status = 'closed', closed_at = ?, closed_reason = 'offer_accepted'
                    WHERE id = ?
                    """,
                    (isoformat_utc(now), request_id),
                )
                ignored = conn.execute(
                    """
                    UPDATE vendor_offers
                    SET status = 'ignored'
                    WHERE request_id = ? AND id != ? AND status = 'pending'
                    """,
                    (request_id, offer_id),
                ).rowcount
                request_status = REQUEST_CLOSED
                logger.info(
                    "offer_accepted request_id=%s offer_id=%s siblings_ignored=%d",
                    request_id,
                    offer_id,
                    ignored,
                )
            updated = conn.execute("SELECT * FROM vendor_offers WHERE id = ?", (offer_id,)).fetchone()
        return self._offer_from_row(updated), request_status

    def record_checkout_session(self, *, request_id: str, offer_id: str, session_id: str) -> bool:
        with self.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE vendor_offers
                SET payment_status = 'pending', stripe_session_id = ?
                WHERE id = ? AND request_id = ? AND payment_status != 'paid'
                """,
                (session_id, offer_id, request_id),
            ).rowcount
        return updated > 0

    def mark_offer_paid(
        self,
        *,
        request_id: str,
        offer_id: str,
        session_id: Optional[str],
        payment_intent: Optional[str],
        paid_at: datetime,
    ) -> int:
        with self.transaction() as conn:
            return conn.execute(
                """
                UPDATE vendor_offers
                SET payment_status = 'paid', stripe_session_id = ?, stripe_payment_intent = ?, paid_at = ?
                WHERE id = ? AND request_id = ? AND payment_status != 'paid'
                """,
                (session_id, payment_intent, isoformat_utc(paid_at), offer_id, request_id),
            ).rowcount

    def mark_offer_failed(self, *, request_id: str, offer_id: str, session_id: Optional[str]) -> int:
        """Fail the offer's payment only if ``session_id`` is still its current session.

        A late or redelivered expiry for a superseded session matches no row.
        """
        with self.transaction() as conn:
            return conn.execute(
                """
                UPDATE vendor_offers
                SET payment_status = 'failed', stripe_session_id = COALESCE(stripe_session_id, ?)
                WHERE id = ? AND request_id = ? AND payment_status != 'paid'
                  AND (stripe_session_id IS NULL OR stripe_session_id = ?)
                """,
                (session_id, offer_id, request_id, session_id),
            ).rowcount
