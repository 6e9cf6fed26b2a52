import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Literal, NamedTuple, Optional

from servicehub.models import Principal

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Principal]], None]


class FieldFilter(NamedTuple):
    field: str
    op: Literal["==", "array-contains"]
    value: Any


class Gateway(ABC):
    """Managed auth + document store + blob store, as seen by one client session.

    Storage is shared between sessions; the signed-in principal and the
    session-change listeners belong to this instance only.
    """

    backend_name = "abstract"

    def __init__(self) -> None:
        self._session_lock = Lock()
        self._principal: Optional[Principal] = None
        self._listeners: List[SessionListener] = []

    @property
    def current_principal(self) -> Optional[Principal]:
        return self._principal

    def subscribe_session(self, listener: SessionListener) -> Callable[[], None]:
        """Register a session-change listener; it is called once right away with the current principal."""
        with self._session_lock:
            self._listeners.append(listener)
            current = self._principal

        def unsubscribe() -> None:
            with self._session_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        self._notify([listener], current)
        return unsubscribe

    def _set_principal(self, principal: Optional[Principal]) -> None:
        with self._session_lock:
            self._principal = principal
            listeners = list(self._listeners)
        self._notify(listeners, principal)

    def _notify(self, listeners: Iterable[SessionListener], principal: Optional[Principal]) -> None:
        for listener in listeners:
            try:
                listener(principal)
            except Exception:
                logger.exception("Session listener failed")

    async def sign_out(self) -> None:
        self._set_principal(None)

    @abstractmethod
    def new_session(self) -> "Gateway":
        """Return a gateway over the same storage with its own signed-out session."""

    @abstractmethod
    async def create_user(self, email: str, password: str, display_name: str = "") -> Principal:
        ...

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        ...

    @abstractmethod
    async def sign_in_with_idp(self, id_token: str, provider_id: str = "google.com") -> Principal:
        ...

    @abstractmethod
    async def update_profile(
        self,
        uid: str,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Principal:
        ...

    @abstractmethod
    async def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Iterable[FieldFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def create_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        """Write a new document under a fixed id; ConflictError if it already exists."""

    @abstractmethod
    async def set_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        """Shallow-merge data into an existing document; NotFoundError if it is absent."""

    @abstractmethod
    async def delete_document(self, collection: str, document_id: str) -> None:
        ...

    @abstractmethod
    async def upload_blob(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        """Store bytes under path and return a retrievable URL."""

    async def close(self) -> None:
        return None
