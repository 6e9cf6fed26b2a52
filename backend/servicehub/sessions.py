import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, Header, HTTPException, Request, status

from servicehub.auth import SESSION_COOKIE, create_session_token, resolve_session_id
from servicehub.config import Settings
from servicehub.gateway.base import Gateway
from servicehub.models import Account, Settlement, SliceState
from servicehub.store.root import Store

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "NotFoundError": status.HTTP_404_NOT_FOUND,
    "ConflictError": status.HTTP_409_CONFLICT,
    "CredentialError": status.HTTP_401_UNAUTHORIZED,
    "ValidationError": status.HTTP_400_BAD_REQUEST,
    "InvalidTransitionError": status.HTTP_400_BAD_REQUEST,
    "UploadError": status.HTTP_502_BAD_GATEWAY,
    "ReadError": status.HTTP_502_BAD_GATEWAY,
    "WriteError": status.HTTP_502_BAD_GATEWAY,
}


@dataclass
class ClientSession:
    id: str
    store: Store
    token: str
    expires_at: datetime

    @property
    def user(self) -> Optional[Account]:
        return self.store.state.auth.user


class SessionRegistry:
    """One Store per client session, all sharing the process gateway's storage."""

    def __init__(self, gateway: Gateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings
        self._lock = Lock()
        self._sessions: Dict[str, ClientSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def open(self) -> ClientSession:
        await self._prune_expired()
        session_id = f"ses_{uuid4().hex}"
        store = Store(self.gateway.new_session(), self.settings)
        await store.start()
        token, expires_at = create_session_token(session_id, self.settings)
        session = ClientSession(
            id=session_id,
            store=store,
            token=token,
            expires_at=datetime.fromisoformat(expires_at),
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info("Opened client session %s", session_id)
        return session

    def get(self, session_id: str) -> Optional[ClientSession]:
        with self._lock:
            return self._sessions.get(session_id)

    async def discard(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.store.close()
            logger.info("Closed client session %s", session_id)

    async def _prune_expired(self) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired: List[str] = [key for key, session in self._sessions.items() if session.expires_at <= now]
        for session_id in expired:
            await self.discard(session_id)

    async def close_all(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.discard(session_id)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def optional_session(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    registry: SessionRegistry = Depends(get_registry),
) -> Optional[ClientSession]:
    session_id = resolve_session_id(authorization, request.cookies.get(SESSION_COOKIE), registry.settings)
    return registry.get(session_id) if session_id else None


def require_account(session: Optional[ClientSession] = Depends(optional_session)) -> ClientSession:
    if session is None or session.user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return session


def raise_for_settlement(settlement: Settlement) -> None:
    if settlement.ok:
        return
    status_code = ERROR_STATUS_CODES.get(settlement.error_type or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=settlement.error or "Request failed")


def browse_store(
    session: Optional[ClientSession] = Depends(optional_session),
    registry: SessionRegistry = Depends(get_registry),
) -> Store:
    """Store for anonymous reads: the caller's own when signed in, otherwise a throwaway one."""
    if session is not None:
        return session.store
    return Store(registry.gateway.new_session(), registry.settings)


def snapshot(state: SliceState) -> Dict[str, Any]:
    return state.model_dump(mode="json", by_alias=True)
