import asyncio
import logging
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

import firebase_admin
import httpx
from firebase_admin import auth, credentials, firestore, storage
from firebase_admin.exceptions import FirebaseError
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter

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

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

CREDENTIAL_ERROR_CODES = {
    "EMAIL_NOT_FOUND": "Invalid email or password.",
    "INVALID_PASSWORD": "Invalid email or password.",
    "INVALID_LOGIN_CREDENTIALS": "Invalid email or password.",
    "USER_DISABLED": "This account has been disabled.",
    "INVALID_IDP_RESPONSE": "Invalid federated credential.",
}

VALIDATION_ERROR_CODES = {
    "INVALID_EMAIL": "The email address is badly formatted.",
    "MISSING_PASSWORD": "A password is required.",
    "WEAK_PASSWORD": "Password should be at least 6 characters.",
    "EMAIL_EXISTS": "The email address is already in use by another account.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Try again later.",
    "OPERATION_NOT_ALLOWED": "This sign-in method is disabled.",
}


def identity_error(payload: Any, status_code: int = 400) -> ServiceHubError:
    """Translate an Identity Toolkit error body into the error taxonomy."""
    message = ""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or "")
    code, _, detail = message.partition(" : ")
    code = code.strip()
    if code in CREDENTIAL_ERROR_CODES:
        return CredentialError(CREDENTIAL_ERROR_CODES[code])
    if code in VALIDATION_ERROR_CODES:
        return ValidationError(detail.strip() or VALIDATION_ERROR_CODES[code])
    if status_code >= 500 or not code:
        return ReadError(f"Identity service unavailable ({status_code})")
    return ValidationError(code.replace("_", " ").capitalize())


def _principal_from_record(record: Any) -> Principal:
    return Principal(
        uid=record.uid,
        email=record.email or "",
        display_name=record.display_name or "",
        photo_url=record.photo_url or "",
    )


def _principal_from_identity(payload: Dict[str, Any]) -> Principal:
    return Principal(
        uid=str(payload["localId"]),
        email=str(payload.get("email") or ""),
        display_name=str(payload.get("displayName") or ""),
        photo_url=str(payload.get("photoUrl") or ""),
    )


class FirebaseBackend:
    """Shared firebase-admin app, Firestore client and Storage bucket."""

    def __init__(
        self,
        credentials_path: Optional[str],
        storage_bucket: Optional[str],
        web_api_key: Optional[str],
        http_timeout_seconds: float = 10.0,
    ) -> None:
        self._lock = Lock()
        self.web_api_key = web_api_key
        self.http_timeout_seconds = http_timeout_seconds
        options = {"storageBucket": storage_bucket} if storage_bucket else None
        with self._lock:
            try:
                self.app = firebase_admin.get_app()
            except ValueError:
                cred = credentials.Certificate(credentials_path) if credentials_path else None
                self.app = firebase_admin.initialize_app(cred, options)
                logger.info("Firebase app initialized")
        self.db = firestore.client(app=self.app)
        self._bucket = None
        self._storage_bucket = storage_bucket

    def bucket(self) -> Any:
        if self._bucket is None:
            with self._lock:
                if self._bucket is None:
                    self._bucket = storage.bucket(name=self._storage_bucket, app=self.app)
        return self._bucket

    def create_user(self, email: str, password: str, display_name: str) -> Principal:
        try:
            record = auth.create_user(
                email=email.strip(),
                password=password,
                display_name=display_name.strip() or None,
                app=self.app,
            )
        except auth.EmailAlreadyExistsError as exc:
            raise ValidationError("The email address is already in use by another account.") from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        except FirebaseError as exc:
            raise WriteError(str(exc)) from exc
        return _principal_from_record(record)

    def update_profile(self, uid: str, display_name: Optional[str], photo_url: Optional[str]) -> Principal:
        changes: Dict[str, Any] = {}
        if display_name is not None:
            changes["display_name"] = display_name.strip()
        if photo_url is not None:
            changes["photo_url"] = photo_url or None
        try:
            record = auth.update_user(uid, app=self.app, **changes) if changes else auth.get_user(uid, app=self.app)
        except auth.UserNotFoundError as exc:
            raise NotFoundError("User not found") from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        except FirebaseError as exc:
            raise WriteError(str(exc)) from exc
        return _principal_from_record(record)

    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            snapshot = self.db.collection(collection).document(document_id).get()
        except google_exceptions.GoogleAPICallError as exc:
            raise ReadError(f"Read {collection}/{document_id} failed: {exc}") from exc
        if not snapshot.exists:
            return None
        return {**(snapshot.to_dict() or {}), "id": snapshot.id}

    def query(
        self,
        collection: str,
        filters: Iterable[FieldFilter],
        order_by: Optional[str],
        descending: bool,
    ) -> List[Dict[str, Any]]:
        query: Any = self.db.collection(collection)
        for item in filters:
            query = query.where(filter=FirestoreFieldFilter(item.field, item.op, item.value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        try:
            return [{**(snapshot.to_dict() or {}), "id": snapshot.id} for snapshot in query.stream()]
        except google_exceptions.GoogleAPICallError as exc:
            raise ReadError(f"Query {collection} failed: {exc}") from exc

    def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        try:
            _, reference = self.db.collection(collection).add(data)
        except google_exceptions.GoogleAPICallError as exc:
            raise WriteError(f"Create in {collection} failed: {exc}") from exc
        return reference.id

    def create_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        try:
            self.db.collection(collection).document(document_id).create(data)
        except google_exceptions.Conflict as exc:
            raise ConflictError(f"Document already exists: {collection}/{document_id}") from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise WriteError(f"Create {collection}/{document_id} failed: {exc}") from exc

    def set_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        try:
            self.db.collection(collection).document(document_id).set(data)
        except google_exceptions.GoogleAPICallError as exc:
            raise WriteError(f"Write {collection}/{document_id} failed: {exc}") from exc

    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        try:
            self.db.collection(collection).document(document_id).update(data)
        except google_exceptions.NotFound as exc:
            raise NotFoundError(f"No document to update: {collection}/{document_id}") from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise WriteError(f"Update {collection}/{document_id} failed: {exc}") from exc

    def delete_document(self, collection: str, document_id: str) -> None:
        try:
            self.db.collection(collection).document(document_id).delete()
        except google_exceptions.GoogleAPICallError as exc:
            raise WriteError(f"Delete {collection}/{document_id} failed: {exc}") from exc

    def upload_blob(self, path: str, content: bytes, content_type: str) -> str:
        try:
            blob = self.bucket().blob(path)
            blob.upload_from_string(content, content_type=content_type)
            blob.make_public()
        except (google_exceptions.GoogleAPICallError, ValueError) as exc:
            raise UploadError(f"Upload failed: {exc}") from exc
        return blob.public_url


class FirebaseGateway(Gateway):
    backend_name = "firebase"

    def __init__(self, backend: FirebaseBackend) -> None:
        super().__init__()
        self.backend = backend

    def new_session(self) -> "FirebaseGateway":
        return FirebaseGateway(self.backend)

    async def _identity_call(self, endpoint: str, body: Dict[str, Any]) -> Principal:
        if not self.backend.web_api_key:
            raise ValidationError("FIREBASE_WEB_API_KEY is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.backend.http_timeout_seconds) as client:
                response = await client.post(
                    f"{IDENTITY_TOOLKIT_URL}/accounts:{endpoint}",
                    params={"key": self.backend.web_api_key},
                    json=body,
                )
        except httpx.HTTPError as exc:
            raise ReadError(f"Identity service request failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            raise identity_error(payload, response.status_code)
        return _principal_from_identity(payload)

    async def create_user(self, email: str, password: str, display_name: str = "") -> Principal:
        principal = await asyncio.to_thread(self.backend.create_user, email, password, display_name)
        logger.info("Created Firebase user uid=%s", principal.uid)
        self._set_principal(principal)
        return principal

    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        principal = await self._identity_call(
            "signInWithPassword",
            {"email": email.strip(), "password": password, "returnSecureToken": True},
        )
        self._set_principal(principal)
        return principal

    async def sign_in_with_idp(self, id_token: str, provider_id: str = "google.com") -> Principal:
        principal = await self._identity_call(
            "signInWithIdp",
            {
                "postBody": f"id_token={id_token}&providerId={provider_id}",
                "requestUri": "http://localhost",
                "returnSecureToken": True,
                "returnIdpCredential": True,
            },
        )
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
        return await asyncio.to_thread(self.backend.add_document, collection, data)

    async def create_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.create_document, collection, document_id, data)

    async def set_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.set_document, collection, document_id, data)

    async def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.backend.update_document, collection, document_id, data)

    async def delete_document(self, collection: str, document_id: str) -> None:
        await asyncio.to_thread(self.backend.delete_document, collection, document_id)

    async def upload_blob(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        return await asyncio.to_thread(self.backend.upload_blob, path, content, content_type)
