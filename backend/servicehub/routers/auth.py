from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Response

from servicehub.auth import SESSION_COOKIE
from servicehub.models import (
    Account,
    AccountUpdate,
    FederatedLoginRequest,
    LoginRequest,
    RegisterRequest,
    SessionResponse,
    Settlement,
)
from servicehub.sessions import (
    ClientSession,
    SessionRegistry,
    get_registry,
    optional_session,
    raise_for_settlement,
    require_account,
    snapshot,
)

router = APIRouter(prefix="/auth", tags=["auth"])


async def _authenticate(
    response: Response,
    session: Optional[ClientSession],
    registry: SessionRegistry,
    operation: Callable[[ClientSession], Awaitable[Settlement]],
) -> SessionResponse:
    opened = session is None
    if session is None:
        session = await registry.open()
    settlement = await operation(session)
    if not settlement.ok and opened:
        await registry.discard(session.id)
    raise_for_settlement(settlement)
    await session.store.settle()
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        httponly=True,
        samesite="lax",
        max_age=registry.settings.session_ttl_hours * 3600,
    )
    return SessionResponse(
        access_token=session.token,
        expires_at=session.expires_at.isoformat(),
        user=session.user,
    )


@router.post("/register", response_model=SessionResponse, response_model_by_alias=True)
async def register(
    payload: RegisterRequest,
    response: Response,
    session: Optional[ClientSession] = Depends(optional_session),
    registry: SessionRegistry = Depends(get_registry),
):
    return await _authenticate(
        response,
        session,
        registry,
        lambda active: active.store.auth.register(
            payload.email, payload.password, payload.display_name, payload.user_type
        ),
    )


@router.post("/login", response_model=SessionResponse, response_model_by_alias=True)
async def login(
    payload: LoginRequest,
    response: Response,
    session: Optional[ClientSession] = Depends(optional_session),
    registry: SessionRegistry = Depends(get_registry),
):
    return await _authenticate(
        response,
        session,
        registry,
        lambda active: active.store.auth.sign_in(payload.email, payload.password),
    )


@router.post("/federated", response_model=SessionResponse, response_model_by_alias=True)
async def federated_login(
    payload: FederatedLoginRequest,
    response: Response,
    session: Optional[ClientSession] = Depends(optional_session),
    registry: SessionRegistry = Depends(get_registry),
):
    return await _authenticate(
        response,
        session,
        registry,
        lambda active: active.store.auth.sign_in_with_federated_provider(payload.id_token, payload.provider_id),
    )


@router.post("/logout")
async def logout(
    response: Response,
    session: Optional[ClientSession] = Depends(optional_session),
    registry: SessionRegistry = Depends(get_registry),
):
    response.delete_cookie(SESSION_COOKIE)
    if session is None:
        return {"status": "signed_out"}
    settlement = await session.store.auth.sign_out()
    await registry.discard(session.id)
    raise_for_settlement(settlement)
    return {"status": "signed_out"}


@router.get("/me", response_model=Account, response_model_by_alias=True)
def me(session: ClientSession = Depends(require_account)):
    return session.user


@router.patch("/profile")
async def update_profile(payload: AccountUpdate, session: ClientSession = Depends(require_account)):
    settlement = await session.store.auth.update_profile(
        display_name=payload.display_name,
        photo_url=payload.photo_url,
    )
    raise_for_settlement(settlement)
    return snapshot(session.store.auth.state)
