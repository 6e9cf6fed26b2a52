from datetime import time
from typing import Any, Dict, Optional, Set

from servicehub.errors import InvalidTransitionError, NotFoundError, ValidationError
from servicehub.gateway.base import FieldFilter
from servicehub.models import Booking, BookingCreate, BookingsState, BookingStatus, BookingUpdate, Settlement
from servicehub.store.base import Container, replace_by_id

BOOKINGS = "bookings"

BOOKING_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
}

BOOKING_TERMINAL_STATUSES = {"completed", "cancelled"}


def check_transition(current: str, target: Optional[str]) -> None:
    if current in BOOKING_TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Booking is already {current}")
    if target is None or target == current:
        return
    if target not in BOOKING_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid status transition: {current} -> {target}")


class BookingsContainer(Container[BookingsState]):
    name = "bookings"
    operations = frozenset(
        {
            "list_for_customer",
            "list_for_provider",
            "get_by_id",
            "create",
            "update",
            "cancel",
            "confirm",
            "complete",
            "clear_current",
            "clear_error",
        }
    )

    def __init__(self, gateway, settings, clock=None) -> None:
        super().__init__(gateway, settings, BookingsState(), clock)

    async def _load(self, booking_id: str) -> Booking:
        document = await self.gateway.get_document(BOOKINGS, booking_id)
        if document is None:
            raise NotFoundError("Booking not found")
        return Booking.model_validate(document)

    async def _list_by(self, operation: str, field: str, value: str) -> Settlement:
        async def call():
            documents = await self.gateway.query(BOOKINGS, [FieldFilter(field, "==", value)])
            return [Booking.model_validate(document) for document in documents]

        return await self._run(operation, call, lambda state, bookings: {"bookings": bookings})

    async def list_for_customer(self, customer_id: str) -> Settlement:
        return await self._list_by("list_for_customer", "customerId", customer_id)

    async def list_for_provider(self, provider_id: str) -> Settlement:
        return await self._list_by("list_for_provider", "providerId", provider_id)

    async def get_by_id(self, booking_id: str) -> Settlement:
        return await self._run(
            "get_by_id",
            lambda: self._load(booking_id),
            lambda state, booking: {"current_booking": booking},
        )

    async def create(self, fields: BookingCreate) -> Settlement:
        async def call() -> Booking:
            document = {**fields.model_dump(by_alias=True), "createdAt": self.clock()}
            booking_id = await self.gateway.add_document(BOOKINGS, document)
            return Booking.model_validate({**document, "id": booking_id})

        def reduce(state: BookingsState, booking: Booking) -> Dict[str, Any]:
            return {"bookings": [*state.bookings, booking], "current_booking": booking}

        return await self._run("create", call, reduce)

    async def update(self, booking_id: str, fields: BookingUpdate) -> Settlement:
        async def call() -> Booking:
            changes = fields.to_changes()
            current = await self._load(booking_id)
            if self.settings.enforce_booking_transitions:
                check_transition(current.status, changes.get("status"))
            start = changes.get("startTime", current.start_time)
            end = changes.get("endTime", current.end_time)
            if time.fromisoformat(end) < time.fromisoformat(start):
                raise ValidationError("endTime must not be before startTime")
            if changes:
                await self.gateway.update_document(BOOKINGS, booking_id, changes)
            return await self._load(booking_id)

        return await self._run("update", call, self._reduce_changed)

    async def _transition(self, operation: str, booking_id: str, target: BookingStatus) -> Settlement:
        async def call() -> Booking:
            if self.settings.enforce_booking_transitions:
                current = await self._load(booking_id)
                check_transition(current.status, target)
            await self.gateway.update_document(BOOKINGS, booking_id, {"status": target})
            return await self._load(booking_id)

        return await self._run(operation, call, self._reduce_changed)

    async def cancel(self, booking_id: str) -> Settlement:
        return await self._transition("cancel", booking_id, "cancelled")

    async def confirm(self, booking_id: str) -> Settlement:
        return await self._transition("confirm", booking_id, "confirmed")

    async def complete(self, booking_id: str) -> Settlement:
        return await self._transition("complete", booking_id, "completed")

    def _reduce_changed(self, state: BookingsState, booking: Booking) -> Dict[str, Any]:
        return {"bookings": replace_by_id(state.bookings, booking), "current_booking": booking}

    def clear_current(self) -> None:
        self._replace(current_booking=None)
