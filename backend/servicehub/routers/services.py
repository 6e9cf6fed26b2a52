from typing import Optional, Type, TypeVar

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, ValidationError

from servicehub.models import (
    ImageUpload,
    ListingCreateRequest,
    ReviewCreate,
    ReviewCreateRequest,
    ServiceListing,
    ServiceListingCreate,
    ServiceListingUpdate,
)
from servicehub.sessions import ClientSession, browse_store, raise_for_settlement, require_account, snapshot
from servicehub.store.root import Store

router = APIRouter(prefix="/api/services", tags=["services"])

M = TypeVar("M", bound=BaseModel)


def _parse_form_model(model: Type[M], raw: str) -> M:
    try:
        return model.model_validate_json(raw or "{}")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))


async def _read_image(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    return ImageUpload(
        filename=image.filename,
        content=await image.read(),
        content_type=image.content_type or "application/octet-stream",
    )


async def _load_owned(session: ClientSession, service_id: str) -> ServiceListing:
    settlement = await session.store.services.get_by_id(service_id)
    raise_for_settlement(settlement)
    listing: ServiceListing = settlement.payload
    if listing.provider_id != session.user.id:
        raise HTTPException(status_code=403, detail="Only the provider can change this listing")
    return listing


@router.get("")
async def list_services(category: Optional[str] = Query(default=None), store: Store = Depends(browse_store)):
    if category:
        settlement = await store.services.list_by_category(category)
    else:
        settlement = await store.services.list()
    raise_for_settlement(settlement)
    return snapshot(store.services.state)


@router.get("/{service_id}")
async def get_service(service_id: str, store: Store = Depends(browse_store)):
    raise_for_settlement(await store.services.get_by_id(service_id))
    return snapshot(store.services.state)


@router.post("", status_code=201)
async def create_service(
    data: str = Form(...),
    image: Optional[UploadFile] = File(default=None),
    session: ClientSession = Depends(require_account),
):
    request = _parse_form_model(ListingCreateRequest, data)
    try:
        fields = ServiceListingCreate(provider_id=session.user.id, **request.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    settlement = await session.store.services.create(fields, await _read_image(image))
    raise_for_settlement(settlement)
    return snapshot(session.store.services.state)


@router.patch("/{service_id}")
async def update_service(
    service_id: str,
    data: str = Form(default="{}"),
    image: Optional[UploadFile] = File(default=None),
    session: ClientSession = Depends(require_account),
):
    fields = _parse_form_model(ServiceListingUpdate, data)
    await _load_owned(session, service_id)
    settlement = await session.store.services.update(service_id, fields, await _read_image(image))
    raise_for_settlement(settlement)
    return snapshot(session.store.services.state)


@router.delete("/{service_id}")
async def delete_service(service_id: str, session: ClientSession = Depends(require_account)):
    await _load_owned(session, service_id)
    raise_for_settlement(await session.store.services.delete(service_id))
    return snapshot(session.store.services.state)


@router.get("/{service_id}/reviews")
async def list_reviews(service_id: str, store: Store = Depends(browse_store)):
    raise_for_settlement(await store.services.list_reviews(service_id))
    return snapshot(store.services.state)


@router.post("/{service_id}/reviews", status_code=201)
async def create_review(
    service_id: str,
    request: ReviewCreateRequest,
    session: ClientSession = Depends(require_account),
):
    raise_for_settlement(await session.store.services.get_by_id(service_id))
    settlement = await session.store.bookings.get_by_id(request.booking_id)
    raise_for_settlement(settlement)
    booking = settlement.payload
    if booking.customer_id != session.user.id or booking.service_id != service_id:
        raise HTTPException(status_code=403, detail="Only the customer of this booking can review it")
    if booking.status != "completed":
        raise HTTPException(status_code=400, detail="Only completed bookings can be reviewed")

    fields = ReviewCreate(
        service_id=service_id,
        booking_id=booking.id,
        customer_id=booking.customer_id,
        provider_id=booking.provider_id,
        rating=request.rating,
        comment=request.comment,
    )
    raise_for_settlement(await session.store.services.create_review(fields))
    return snapshot(session.store.services.state)
