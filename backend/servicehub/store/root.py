import asyncio
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Union

from servicehub.config import Settings, get_settings
from servicehub.gateway.base import Gateway
from servicehub.models import Action, Principal, RootState, SliceState
from servicehub.store.auth import AuthContainer
from servicehub.store.base import Clock, Container
from servicehub.store.bookings import BookingsContainer
from servicehub.store.chat import ChatContainer
from servicehub.store.services import ServicesContainer

logger = logging.getLogger(__name__)

RootListener = Callable[[RootState], None]


class SessionChanged(NamedTuple):
    principal: Optional[Principal]


class Store:
    """Root state aggregator: one state tree, one dispatch channel, one session subscription."""

    def __init__(self, gateway: Gateway, settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.auth = AuthContainer(gateway, self.settings, clock)
        self.services = ServicesContainer(gateway, self.settings, clock)
        self.bookings = BookingsContainer(gateway, self.settings, clock)
        self.chat = ChatContainer(gateway, self.settings, clock)
        self._containers: Dict[str, Container] = {
            container.name: container for container in (self.auth, self.services, self.bookings, self.chat)
        }
        self._listeners: List[RootListener] = []
        for container in self._containers.values():
            container.subscribe(self._on_slice_change)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe_session: Optional[Callable[[], None]] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def state(self) -> RootState:
        return RootState(
            auth=self.auth.state,
            services=self.services.state,
            bookings=self.bookings.state,
            chat=self.chat.state,
        )

    def subscribe(self, listener: RootListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_slice_change(self, name: str, state: SliceState) -> None:
        if not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed after %s change", name)

    async def dispatch(self, action: Union[Action, str], **payload: Any) -> Any:
        if isinstance(action, str):
            action = Action(type=action, payload=payload)
        slice_name, _, operation = action.type.partition("/")
        container = self._containers.get(slice_name)
        if container is None or not operation:
            raise ValueError(f"Unknown action type: {action.type}")
        return await container.handle(operation, action.payload)

    async def start(self) -> None:
        """Subscribe to the gateway's session-change stream (once)."""
        if self._unsubscribe_session is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe_session = self.gateway.subscribe_session(self._on_session_change)

    def _on_session_change(self, principal: Optional[Principal]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        message = SessionChanged(principal)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._forward(message)
        else:
            loop.call_soon_threadsafe(self._forward, message)

    def _forward(self, message: SessionChanged) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self.auth.apply_session_change(message.principal))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def settle(self) -> None:
        """Wait until every forwarded session change has been applied."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        if self._unsubscribe_session is not None:
            self._unsubscribe_session()
            self._unsubscribe_session = None
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
