import asyncio
import hashlib
import hmac
import json
import logging
import re
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type
from uuid import uuid4

from servicehub.errors import (
    ConflictError,
    CredentialError,
    NotFoundError,
    ReadError,
    ServiceHubError,
    UploadError,
    ValidationError,
    WriteError,
)
from servicehub.gateway.base import FieldFilter, Gateway
from servicehub.models import Principal

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MIN_PASSWORD_LENGTH = 6
PBKDF2_ROUNDS = 120_000


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bytes):
        raise TypeError("bytes cannot be stored in a document; upload them as a blob")
    raise TypeError(f"Unsupported document value: {type(value).__name__}")


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps({key: value for key, value in data.items() if key != "id"}, default=_encode_value)


def _load(document_id: str, raw_value: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        parsed = {}
    document = parsed if isinstance(parsed, dict) else {}
    document["id"] = document_id
    return document


@contextmanager
def _translate(error_cls: Type[ServiceHubError], action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise error_cls(f"{action} failed: {exc}") from exc


def _hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ROUNDS)
    return digest.hex()


@dataclass
class SqliteBackend:
    """Document, credential and blob storage on one SQLite file plus a blob directory."""

    db_path: str
    blob_dir: str
    blob_base_url: str = "/blobs"

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        Path(self.blob_dir).mkdir(parents=True, exist_ok=True)
        self.blob_base_url = self.blob_base_url.rstrip("/")
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        data_json TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS credentials (
                        uid TEXT PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT,
                        salt TEXT,
                        display_name TEXT NOT NULL DEFAULT '',
                        photo_url TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS federated_tokens (
                        token TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        subject TEXT NOT NULL,
                        email TEXT NOT NULL,
                        display_name TEXT NOT NULL DEFAULT '',
                        photo_url TEXT NOT NULL DEFAULT ''
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS federated_identities (
                        provider_id TEXT NOT NULL,
                        subject TEXT NOT NULL,
                        uid TEXT NOT NULL,
                        PRIMARY KEY (provider_id, subject)
                    )
                    """
                )
                conn.commit()

    def _principal_from_row(self, row: sqlite3.Row) -> Principal:
        return Principal(
            uid=row["uid"],
            email=row["email"],
            display_name=row["display_name"] or "",
            photo_url=row["photo_url"] or "",
        )

    def create_user(self, email: str, password: str, display_name: str) -> Principal:
        normalized_email = email.strip().lower()
        if not EMAIL_PATTERN.match(normalized_email):
            raise ValidationError("The email address is badly formatted.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters.")

        uid = uuid4().hex[:28]
        salt = secrets.token_hex(16)
        with self._lock:
            with _translate(WriteError, "Create user"), self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO credentials (uid, email, password_hash, salt, display_name, photo_url, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            uid,
                            normalized_email,
                            _hash_password(password, salt),
                            salt,
                            display_name.strip(),
                            "",
                            datetime.now(timezone.utc).isoformat(),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ValidationError("The email address is already in use by another account.") from exc
                conn.commit()
        return Principal(uid=uid, email=normalized_email, display_name=display_name.strip())

    def verify_password(self, email: str, password: str) -> Principal:
        with self._lock:
            with _translate(ReadError, "Sign in"), self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM credentials WHERE email = ?",
                    (email.strip().lower(),),
                ).fetchone()
        if not row or not row["password_hash"]:
            raise CredentialError("Invalid email or password.")
        expected = _hash_password(password, row["salt"])
        if not hmac.compare_digest(expected, row["password_hash"]):
            raise CredentialError("Invalid email or password.")
        return self._principal_from_row(row)

    def register_federated_token(
        self,
        token: str,
        *,
        email: str,
        subject: Optional[str] = None,
        display_name: str = "",
        photo_url: str = "",
        provider_id: str = "google.com",
    ) -> None:
        with self._lock:
            with _translate(WriteError, "Register federated token"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO federated_tokens (token, provider_id, subject, email, display_name, photo_url)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(token) DO UPDATE SET
                        provider_id = excluded.provider_id,
                        subject = excluded.subject,
                        email = excluded.email,
                        display_name = excluded.display_name,
                        photo_url = excluded.photo_url
                    """,
                    (token, provider_id, subject or email.strip().lower(), email.strip().lower(), display_name, photo_url),
                )
                conn.commit()

    def exchange_federated_token(self, token: str, provider_id: str) -> Principal:
        with self._lock:
            with _translate(WriteError, "Federated sign in"), self._connect() as conn:
                assertion = conn.execute(
                    "SELECT * FROM federated_tokens WHERE token = ? AND provider_id = ?",
                    (token, provider_id),
                ).fetchone()
                if not assertion:
                    raise CredentialError("Invalid federated credential.")

                linked = conn.execute(
                    "SELECT uid FROM federated_identities WHERE provider_id = ? AND subject = ?",
                    (provider_id, assertion["subject"]),
                ).fetchone()
                if linked:
                    uid = linked["uid"]
                else:
                    existing = conn.execute(
                        "SELECT uid FROM credentials WHERE email = ?",
                        (assertion["email"],),
                    ).fetchone()
                    if existing:
                        uid = existing["uid"]
                    else:
                        uid = uuid4().hex[:28]
                        conn.execute(
                            """
                            INSERT INTO credentials (uid, email, password_hash, salt, display_name, photo_url, created_at)
                            VALUES (?, ?, NULL, NULL, ?, ?, ?)
                            """,
                            (
                                uid,
                                assertion["email"],
                                assertion["display_name"],
                                assertion["photo_url"],
                                datetime.now(timezone.utc).isoformat(),
                            ),
                        )
                    conn.execute(
                        "INSERT INTO federated_identities (provider_id, subject, uid) VALUES (?, ?, ?)",
                        (provider_id, assertion["subject"], uid),
                    )
                    conn.commit()
                row = conn.execute("SELECT * FROM credentials WHERE uid = ?", (uid,)).fetchone()
        return self._principal_from_row(row)

    def update_profile(self, uid: str, display_name: Optional[str], photo_url: Optional[str]) -> Principal:
        with self._lock:
            with _translate(WriteError, "Update profile"), self._connect() as conn:
                row = conn.execute("SELECT * FROM credentials WHERE uid = ?", (uid,)).fetchone()
                if not row:
                    raise NotFoundError("User not found")
                conn.execute(
                    "UPDATE credentials SET display_name = ?, photo_url = ? WHERE uid = ?",
                    (
                        display_name.strip() if display_name is not None else row["display_name"],
                        photo_url if photo_url is not None else row["photo_url"],
                        uid,
                    ),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM credentials WHERE uid = ?", (uid,)).fetchone()
        return self._principal_from_row(updated)

    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            with _translate(ReadError, f"Read {collection}/{document_id}"), self._connect() as conn:
                row = conn.execute(
                    "SELECT id, data_json FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                ).fetchone()
        return _load(row["id"], row["data_json"]) if row else None

    def query(
        self,
        collection: str,
        filters: Iterable[FieldFilter],
        order_by: Optional[str],
        descending: bool,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT id, data_json FROM documents WHERE collection = ?"
        params: List[Any] = [collection]
        for item in filters:
            path = self._field_path(item.field)
            if item.op == "==":
                if item.value is None:
                    sql += " AND json_extract(data_json, ?) IS NULL"
                    params.append(path)
                else:
                    sql += " AND json_extract(data_json, ?) = ?"
                    params.extend([path, item.value])
            elif item.op == "array-contains":
                sql += " AND EXISTS (SELECT 1 FROM json_each(data_json, ?) WHERE json_each.value = ?)"
                params.extend([path, item.value])
            else:
                raise ValidationError(f"Unsupported query operator: {item.op}")
        if order_by:
            sql += f" ORDER BY json_extract(data_json, ?) {'DESC' if descending else 'ASC'}, rowid ASC"
            params.append(self._field_path(order_by))
        else:
            sql += " ORDER BY rowid ASC"

        with self._lock:
            with _translate(ReadError, f"Query {collection}"), self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        return [_load(row["id"], row["data_json"]) for row in rows]

    def _field_path(self, field: str) -> str:
        if not FIELD_PATTERN.match(field):
            raise ValidationError(f"Invalid field name: {field}")
        return f"$.{field}"

    def create_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        payload = _dump(data)
        with self._lock:
            with _translate(WriteError, f"Create {collection}/{document_id}"), self._connect() as conn:
                try:
                    conn.execute(
                        "INSERT INTO documents (collection, id, data_json, created_at) VALUES (?, ?, ?, ?)",
                        (collection, document_id, payload, datetime.now(timezone.utc).isoformat()),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError(f"Document already exists: {collection}/{document_id}") from exc
                conn.commit()

    def set_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        payload = _dump(data)
        with self._lock:
            with _translate(WriteError, f"Write {collection}/{document_id}"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (collection, id, data_json, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(collection, id) DO UPDATE SET data_json = excluded.data_json
                    """,
                    (collection, document_id, payload, datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()

    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            with _translate(WriteError, f"Update {collection}/{document_id}"), self._connect() as conn:
                row = conn.execute(
                    "SELECT data_json FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                ).fetchone()
                if not row:
                    raise NotFoundError(f"No document to update: {collection}/{document_id}")
                merged = _load(document_id, row["data_json"])
                merged.update(data)
                conn.execute(
                    "UPDATE documents SET data_json = ? WHERE collection = ? AND id = ?",
                    (_dump(merged), collection, document_id),
                )
                conn.commit()

    def delete_document(self, collection: str, document_id: str) -> None:
        with self._lock:
            with _translate(WriteError, f"Delete {collection}/{document_id}"), self._connect() as conn:
                conn.execute("DELETE FROM documents WHERE collection = ? AND id = ?", (collection, document_id))
                conn.commit()

    def write_blob(self, path: str, content: bytes) -> str:
        relative = Path(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise UploadError(f"Invalid blob path: {path}")
        target = Path(self.blob_dir) / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise UploadError(f"Upload failed: {exc}") from exc
        return f"{self.blob_base_url}/{relative.as_posix()}"


class SqliteGateway(Gateway):
    backend_name = "sqlite"

    def __init__(self, backend: SqliteBackend) -> None:
        super().__init__()
        self.backend = backend

    @classmethod
    def open(cls, db_path: str, blob_dir: str, blob_base_url: str = "/blobs") -> "SqliteGateway":
        return cls(SqliteBackend(db_path=db_path, blob_dir=blob_dir, blob_base_url=blob_base_url))

    def new_session(self) -> "SqliteGateway":
        return SqliteGateway(self.backend)

    async def create_user(self, email: str, password: str, display_name: str = "") -> Principal:
        principal = await asyncio.to_thread(self.backend.create_user, email, password, display_name)
        logger.info("Created credential uid=%s", principal.uid)
        self._set_principal(principal)
        return principal

    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        principal = await asyncio.to_thread(self.backend.verify_password, email, password)
        self._set_principal(principal)
        return principal

    async def sign_in_with_idp(self, id_token: str, provider_id: str = "google.com") -> Principal:
        principal = await asyncio.to_thread(self.backend.exchange_federated_token, id_token, provider_id)
        self._set_principal(principal)
        return principal

    async def update_profile(
        self,
        uid: str,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Principal:
        principal = await asyncio.to_thread(self.backend.update_profile, uid, display_name, photo_url)
        if self._principal and self._principal.uid == uid:
            self._principal = principal
        return principal

    async def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.backend.get_document, collection, document_id)

    async def query(
        self,
        collection: str,
        filters: Iterable[FieldFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.backend.query, collection, list(filters), order_by, descending)

    async def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        document_id = uuid4().hex[:20]
        await asyncio.to_thread(self.backend.create_document, collection, document_id, data)
        return document_id

    async def create_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.create_document, collection, document_id, data)

    async def set_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.set_document, collection, document_id, data)

    async def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.update_document, collection, document_id, data)

    async def delete_document(self, collection: str, document_id: str) -> None:
        await asyncio.to_thread(self.backend.delete_document, collection, document_id)

    async def upload_blob(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        return await asyncio.to_thread(self.backend.write_blob, path, content)
