import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Dict, FrozenSet, Generic, List, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from servicehub.config import Settings
from servicehub.errors import ServiceHubError
from servicehub.gateway.base import Gateway
from servicehub.models import Settlement, SliceState

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=SliceState)
Clock = Callable[[], datetime]
StateListener = Callable[[str, SliceState], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def replace_by_id(items: List[Any], item: Any) -> List[Any]:
    return [item if existing.id == item.id else existing for existing in items]


class Container(Generic[S]):
    """One slice of application state plus the remote operations that own it.

    Every async operation runs through ``_run``: the slice goes pending
    (``is_loading=True``, ``error=None``) before the first gateway call, then
    either the reducer is applied or the failure is stored as ``error``.
    Operations never raise; callers inspect the returned Settlement or the slice.
    """

    name: ClassVar[str] = ""
    operations: ClassVar[FrozenSet[str]] = frozenset()

    def __init__(self, gateway: Gateway, settings: Settings, initial_state: S, clock: Optional[Clock] = None) -> None:
        self.gateway = gateway
        self.settings = settings
        self.clock = clock or utc_now
        self._state = initial_state
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> S:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _replace(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            listener(self.name, self._state)

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        reduce: Optional[Callable[[S, Any], Dict[str, Any]]] = None,
    ) -> Settlement:
        action = f"{self.name}/{operation}"
        self._replace(is_loading=True, error=None)
        try:
            payload = await call()
        except ServiceHubError as exc:
            return self._reject(action, str(exc), type(exc).__name__)
        except PydanticValidationError as exc:
            return self._reject(
                action, f"Invalid {exc.title} data: {exc.error_count()} validation error(s)", "ValidationError"
            )
        except Exception:
            logger.exception("Unexpected failure in %s", action)
            return self._reject(action, "Unexpected error. Please retry.", None)

        changes = reduce(self._state, payload) if reduce else {}
        self._replace(is_loading=False, **changes)
        return Settlement(operation=action, status="fulfilled", payload=payload)

    def _reject(self, action: str, message: str, error_type: Optional[str]) -> Settlement:
        logger.warning("%s rejected: %s", action, message)
        self._replace(is_loading=False, error=message)
        return Settlement(operation=action, status="rejected", error=message, error_type=error_type)

    def clear_error(self) -> None:
        self._replace(error=None)

    async def handle(self, operation: str, payload: Dict[str, Any]) -> Any:
        if operation not in self.operations:
            raise ValueError(f"Unknown operation: {self.name}/{operation}")
        result = getattr(self, operation)(**payload)
        if inspect.isawaitable(result):
            result = await result
        return result
