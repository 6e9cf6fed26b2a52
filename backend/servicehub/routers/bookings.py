from typing import Any, Dict, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from servicehub.models import (
    Booking,
    BookingChargeChange,
    BookingCreate,
    BookingCreateRequest,
    BookingScheduleChange,
    BookingUpdate,
)
from servicehub.sessions import ClientSession, raise_for_settlement, require_account, snapshot

router = APIRouter(prefix="/api/bookings", tags=["bookings"])

PROVIDER_ONLY_FIELDS = {"paymentStatus", "payment_status", "totalAmount", "total_amount"}


async def _load_visible(session: ClientSession, booking_id: str) -> Booking:
    settlement = await session.store.bookings.get_by_id(booking_id)
    raise_for_settlement(settlement)
    booking: Booking = settlement.payload
    if session.user.id not in (booking.customer_id, booking.provider_id):
        raise HTTPException(status_code=403, detail="Not a party to this booking")
    return booking


@router.get("")
async def list_bookings(
    role: Literal["customer", "provider"] = Query(default="customer"),
    session: ClientSession = Depends(require_account),
):
    bookings = session.store.bookings
    if role == "provider":
        settlement = await bookings.list_for_provider(session.user.id)
    else:
        settlement = await bookings.list_for_customer(session.user.id)
    raise_for_settlement(settlement)
    return snapshot(bookings.state)


@router.get("/{booking_id}")
async def get_booking(booking_id: str, session: ClientSession = Depends(require_account)):
    await _load_visible(session, booking_id)
    return snapshot(session.store.bookings.state)


@router.post("", status_code=201)
async def create_booking(request: BookingCreateRequest, session: ClientSession = Depends(require_account)):
    lookup = await session.store.services.get_by_id(request.service_id)
    raise_for_settlement(lookup)
    listing = lookup.payload
    if listing.provider_id == session.user.id:
        raise HTTPException(status_code=400, detail="Providers cannot book their own service")
    try:
        fields = BookingCreate(
            service_id=listing.id,
            customer_id=session.user.id,
            provider_id=listing.provider_id,
            date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            total_amount=listing.price if request.total_amount is None else request.total_amount,
            note=request.note,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    raise_for_settlement(await session.store.bookings.create(fields))
    return snapshot(session.store.bookings.state)


@router.patch("/{booking_id}")
async def update_booking(
    booking_id: str,
    payload: Dict[str, Any] = Body(...),
    session: ClientSession = Depends(require_account),
):
    booking = await _load_visible(session, booking_id)
    is_provider = booking.provider_id == session.user.id
    if not is_provider and PROVIDER_ONLY_FIELDS.intersection(payload):
        raise HTTPException(status_code=403, detail="Only the provider can change payment details")
    change_model = BookingChargeChange if is_provider else BookingScheduleChange
    try:
        fields = BookingUpdate(**change_model.model_validate(payload).model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    raise_for_settlement(await session.store.bookings.update(booking_id, fields))
    return snapshot(session.store.bookings.state)


@router.post("/{booking_id}/cancel")
async def cancel_booking(booking_id: str, session: ClientSession = Depends(require_account)):
    await _load_visible(session, booking_id)
    raise_for_settlement(await session.store.bookings.cancel(booking_id))
    return snapshot(session.store.bookings.state)


@router.post("/{booking_id}/confirm")
async def confirm_booking(booking_id: str, session: ClientSession = Depends(require_account)):
    booking = await _load_visible(session, booking_id)
    if booking.provider_id != session.user.id:
        raise HTTPException(status_code=403, detail="Only the provider can confirm a booking")
    raise_for_settlement(await session.store.bookings.confirm(booking_id))
    return snapshot(session.store.bookings.state)


@router.post("/{booking_id}/complete")
async def complete_booking(booking_id: str, session: ClientSession = Depends(require_account)):
    booking = await _load_visible(session, booking_id)
    if booking.provider_id != session.user.id:
        raise HTTPException(status_code=403, detail="Only the provider can complete a booking")
    raise_for_settlement(await session.store.bookings.complete(booking_id))
    return snapshot(session.store.bookings.state)
