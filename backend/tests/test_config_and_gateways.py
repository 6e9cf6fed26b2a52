import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicehub.auth import create_session_token, parse_bearer_token, resolve_session_id, verify_session_token
from servicehub.config import Settings
from servicehub.errors import ConflictError, CredentialError, NotFoundError, ReadError, UploadError, ValidationError
from servicehub.gateway.base import FieldFilter
from servicehub.gateway.firebase_gateway import identity_error
from servicehub.gateway.sqlite_gateway import SqliteBackend, SqliteGateway


def _backend(tmp_path):
    return SqliteBackend(db_path=str(tmp_path / "hub.sqlite3"), blob_dir=str(tmp_path / "blobs"))


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SESSION_TTL_HOURS", "not-a-number")
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "-3")
    monkeypatch.setenv("UNREAD_COUNTER_MODE", "sometimes")
    monkeypatch.setenv("GATEWAY_BACKEND", "FIREBASE")
    monkeypatch.setenv("ENFORCE_BOOKING_TRANSITIONS", "false")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")

    settings = Settings.from_env()

    assert settings.session_ttl_hours == 24
    assert settings.http_timeout_seconds == 10.0
    assert settings.unread_counter_mode == "increment"
    assert settings.gateway_backend == "firebase"
    assert settings.enforce_booking_transitions is False
    assert settings.cors_origins == ["https://a.example", "https://b.example"]


def test_session_tokens_round_trip_and_reject_tampering():
    token, expires_at = create_session_token("ses_1")

    assert verify_session_token(token) == "ses_1"
    assert expires_at
    assert verify_session_token(token[:-2] + "xx") is None
    assert verify_session_token("garbage") is None
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("Basic abc") is None
    assert resolve_session_id(None, token) == "ses_1"
    assert resolve_session_id(f"Bearer {token}", None) == "ses_1"


def test_sqlite_query_filters_and_ordering(tmp_path):
    backend = _backend(tmp_path)
    backend.create_document("conversations", "c1", {"participants": ["a", "b"], "stamp": "2026-01-02"})
    backend.create_document("conversations", "c2", {"participants": ["a", "c"], "stamp": "2026-01-03"})
    backend.create_document("conversations", "c3", {"participants": ["b", "c"], "stamp": "2026-01-01"})

    newest_first = backend.query("conversations", [FieldFilter("participants", "array-contains", "a")], "stamp", True)
    assert [item["id"] for item in newest_first] == ["c2", "c1"]

    backend.create_document("messages", "m1", {"isRead": False, "receiverId": "b"})
    backend.create_document("messages", "m2", {"isRead": True, "receiverId": "b"})
    unread = backend.query("messages", [FieldFilter("isRead", "==", False), FieldFilter("receiverId", "==", "b")], None, False)
    assert [item["id"] for item in unread] == ["m1"]

    with pytest.raises(ValidationError):
        backend.query("messages", [FieldFilter("x') OR 1=1 --", "==", 1)], None, False)


def test_sqlite_create_update_semantics(tmp_path):
    backend = _backend(tmp_path)
    backend.create_document("services", "s1", {"title": "Logo Design", "price": 200})

    with pytest.raises(ConflictError):
        backend.create_document("services", "s1", {"title": "Again"})
    with pytest.raises(NotFoundError):
        backend.update_document("services", "missing", {"price": 1})

    backend.update_document("services", "s1", {"price": 250})
    assert backend.get_document("services", "s1") == {"id": "s1", "title": "Logo Design", "price": 250}

    backend.delete_document("services", "s1")
    assert backend.get_document("services", "s1") is None


def test_sqlite_blob_paths_stay_inside_blob_dir(tmp_path):
    backend = _backend(tmp_path)

    assert backend.write_blob("services/1_logo.png", b"x") == "/blobs/services/1_logo.png"
    with pytest.raises(UploadError):
        backend.write_blob("../escape.txt", b"x")
    with pytest.raises(UploadError):
        backend.write_blob("/etc/passwd", b"x")


def test_sqlite_credentials(tmp_path):
    backend = _backend(tmp_path)

    with pytest.raises(ValidationError, match="badly formatted"):
        backend.create_user("not-an-email", "secret-pass", "X")
    with pytest.raises(ValidationError, match="at least 6"):
        backend.create_user("ana@example.com", "123", "Ana")

    created = backend.create_user("Ana@Example.com", "secret-pass", "Ana")
    assert backend.verify_password("ana@example.com", "secret-pass").uid == created.uid
    with pytest.raises(CredentialError):
        backend.verify_password("ana@example.com", "nope-nope")


def test_gateway_sessions_are_isolated_but_share_storage(tmp_path):
    root = SqliteGateway(_backend(tmp_path))
    first = root.new_session()
    second = root.new_session()
    calls = []
    unsubscribe = second.subscribe_session(calls.append)

    async def scenario():
        await first.create_user("ana@example.com", "secret-pass", "Ana")
        await first.set_document("users", first.current_principal.uid, {"email": "ana@example.com"})
        return await second.get_document("users", first.current_principal.uid)

    shared = asyncio.run(scenario())
    unsubscribe()

    assert first.current_principal is not None
    assert second.current_principal is None
    assert shared["email"] == "ana@example.com"
    assert calls == [None]


@pytest.mark.parametrize(
    "message,status_code,expected_type,expected_text",
    [
        ("INVALID_LOGIN_CREDENTIALS", 400, CredentialError, "Invalid email or password."),
        ("EMAIL_EXISTS", 400, ValidationError, "The email address is already in use by another account."),
        ("WEAK_PASSWORD : Password should be at least 6 characters", 400, ValidationError, "Password should be at least 6 characters"),
        ("INVALID_IDP_RESPONSE : bad token", 400, CredentialError, "Invalid federated credential."),
        ("", 503, ReadError, "Identity service unavailable (503)"),
        ("QUOTA_EXCEEDED", 400, ValidationError, "Quota exceeded"),
    ],
)
def test_identity_toolkit_errors_map_to_taxonomy(message, status_code, expected_type, expected_text):
    error = identity_error({"error": {"code": status_code, "message": message}}, status_code)

    assert type(error) is expected_type
    assert str(error) == expected_text
