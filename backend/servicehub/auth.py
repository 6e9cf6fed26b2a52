import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from servicehub.config import Settings, get_settings

SESSION_COOKIE = "servicehub_session"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes, settings: Settings) -> bytes:
    return hmac.new(settings.session_secret.encode("utf-8"), payload, hashlib.sha256).digest()


def create_session_token(session_id: str, settings: Optional[Settings] = None) -> tuple[str, str]:
    settings = settings or get_settings()
    expiry = datetime.now(timezone.utc) + timedelta(hours=settings.session_ttl_hours)
    payload = f"{session_id}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload, settings))}"
    return token, expiry.isoformat()


def verify_session_token(token: str, settings: Optional[Settings] = None) -> Optional[str]:
    settings = settings or get_settings()
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        if not hmac.compare_digest(sent_sig, _sign(payload, settings)):
            return None
        session_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return session_id
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_session_id(
    authorization: Optional[str],
    cookie: Optional[str],
    settings: Optional[Settings] = None,
) -> Optional[str]:
    token = parse_bearer_token(authorization) or (cookie or "").strip() or None
    if not token:
        return None
    return verify_session_token(token, settings)
