import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

ROLES = {"customer", "vendor", "admin"}


def _positive_int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _positive_int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
ADMIN_DASHBOARD_KEY = os.getenv("ADMIN_DASHBOARD_KEY", "")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


@dataclass(frozen=True)
class TokenIdentity:
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(email: str, role: str = "customer") -> tuple[str, str]:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{email.strip().lower()}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[TokenIdentity]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        email, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        if role not in ROLES:
            return None
        return TokenIdentity(email=email, role=role)
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_identity(authorization: Optional[str]) -> Optional[TokenIdentity]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def is_admin_request(authorization: Optional[str] = None, x_admin_key: Optional[str] = None) -> bool:
    identity = resolve_request_identity(authorization)
    if identity and identity.is_admin:
        return True
    # Legacy dashboard key, accepted only when one is configured.
    if ADMIN_DASHBOARD_KEY and x_admin_key:
        return hmac.compare_digest(x_admin_key, ADMIN_DASHBOARD_KEY)
    return False


def require_admin(
    authorization: Optional[str] = Header(default=None),
    x_admin_key: Optional[str] = Header(default=None),
) -> None:
    if not is_admin_request(authorization=authorization, x_admin_key=x_admin_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Admin authentication required", "reason": "admin_required"},
        )


def assert_actor_authorized(actor_email: Optional[str], authorization: Optional[str] = None) -> None:
    identity = resolve_request_identity(authorization)
    if not identity:
        if AUTH_REQUIRED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "Authentication required", "reason": "unauthorized"},
            )
        return
    if identity.is_admin:
        return
    if identity.email != (actor_email or "").strip().lower():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Token user does not match actor email", "reason": "token_mismatch"},
        )
