import logging
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

from servicehub.errors import ConflictError, NotFoundError, ServiceHubError, UploadError
from servicehub.gateway.base import FieldFilter
from servicehub.models import (
    ImageUpload,
    Review,
    ReviewCreate,
    ServiceListing,
    ServiceListingCreate,
    ServiceListingUpdate,
    ServicesState,
    Settlement,
)
from servicehub.store.base import Container, replace_by_id

logger = logging.getLogger(__name__)

SERVICES = "services"
REVIEWS = "reviews"


class ReviewPosted(NamedTuple):
    review: Review
    service: ServiceListing


class ServicesContainer(Container[ServicesState]):
    name = "services"
    operations = frozenset(
        {
            "list",
            "list_by_category",
            "get_by_id",
            "create",
            "update",
            "delete",
            "list_reviews",
            "create_review",
            "clear_current",
            "clear_error",
        }
    )

    def __init__(self, gateway, settings, clock=None) -> None:
        super().__init__(gateway, settings, ServicesState(), clock)

    async def _upload_image(self, image: ImageUpload) -> str:
        filename = Path(image.filename).name or "image"
        stamp = int(self.clock().timestamp() * 1000)
        try:
            return await self.gateway.upload_blob(f"services/{stamp}_{filename}", image.content, image.content_type)
        except UploadError:
            raise
        except ServiceHubError as exc:
            raise UploadError(str(exc)) from exc

    async def _load(self, service_id: str) -> ServiceListing:
        document = await self.gateway.get_document(SERVICES, service_id)
        if document is None:
            raise NotFoundError("Service not found")
        return ServiceListing.model_validate(document)

    async def list(self) -> Settlement:
        async def call():
            documents = await self.gateway.query(SERVICES)
            return [ServiceListing.model_validate(document) for document in documents]

        return await self._run("list", call, lambda state, services: {"services": services})

    async def list_by_category(self, category: str) -> Settlement:
        async def call():
            documents = await self.gateway.query(SERVICES, [FieldFilter("category", "==", category)])
            return [ServiceListing.model_validate(document) for document in documents]

        return await self._run("list_by_category", call, lambda state, services: {"services": services})

    async def get_by_id(self, service_id: str) -> Settlement:
        return await self._run(
            "get_by_id",
            lambda: self._load(service_id),
            lambda state, service: {"current_service": service},
        )

    async def create(self, fields: ServiceListingCreate, image: Optional[ImageUpload] = None) -> Settlement:
        async def call() -> ServiceListing:
            image_url = fields.image_url
            if image is not None:
                image_url = await self._upload_image(image)
            document: Dict[str, Any] = {
                **fields.model_dump(by_alias=True),
                "imageUrl": image_url,
                "rating": 0,
                "reviewCount": 0,
                "createdAt": self.clock(),
            }
            try:
                service_id = await self.gateway.add_document(SERVICES, document)
            except ServiceHubError:
                if image is not None:
                    logger.warning("Listing write failed; uploaded image left unreferenced: %s", image_url)
                raise
            return ServiceListing.model_validate({**document, "id": service_id})

        def reduce(state: ServicesState, service: ServiceListing) -> Dict[str, Any]:
            return {"services": [*state.services, service], "current_service": service}

        return await self._run("create", call, reduce)

    async def update(
        self,
        service_id: str,
        fields: ServiceListingUpdate,
        image: Optional[ImageUpload] = None,
    ) -> Settlement:
        async def call() -> ServiceListing:
            changes = fields.to_changes()
            if image is not None:
                changes["imageUrl"] = await self._upload_image(image)
            if changes:
                await self.gateway.update_document(SERVICES, service_id, changes)
            return await self._load(service_id)

        def reduce(state: ServicesState, service: ServiceListing) -> Dict[str, Any]:
            return {"services": replace_by_id(state.services, service), "current_service": service}

        return await self._run("update", call, reduce)

    async def delete(self, service_id: str) -> Settlement:
        async def call() -> str:
            await self.gateway.delete_document(SERVICES, service_id)
            return service_id

        def reduce(state: ServicesState, deleted_id: str) -> Dict[str, Any]:
            current = state.current_service
            return {
                "services": [service for service in state.services if service.id != deleted_id],
                "current_service": None if current and current.id == deleted_id else current,
            }

        return await self._run("delete", call, reduce)

    async def list_reviews(self, service_id: str) -> Settlement:
        async def call():
            documents = await self.gateway.query(
                REVIEWS,
                [FieldFilter("serviceId", "==", service_id)],
                order_by="createdAt",
                descending=True,
            )
            return [Review.model_validate(document) for document in documents]

        return await self._run("list_reviews", call, lambda state, reviews: {"reviews": reviews})

    async def create_review(self, fields: ReviewCreate) -> Settlement:
        async def call() -> ReviewPosted:
            await self._load(fields.service_id)
            document = {**fields.model_dump(by_alias=True), "createdAt": self.clock()}
            # One review per booking: the booking id is the review's document id.
            try:
                await self.gateway.create_document(REVIEWS, fields.booking_id, document)
            except ConflictError as exc:
                raise ConflictError("This booking has already been reviewed") from exc
            review = Review.model_validate({**document, "id": fields.booking_id})

            ratings = [
                int(item.get("rating", 0))
                for item in await self.gateway.query(REVIEWS, [FieldFilter("serviceId", "==", fields.service_id)])
            ]
            aggregate = {
                "rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
                "reviewCount": len(ratings),
            }
            await self.gateway.update_document(SERVICES, fields.service_id, aggregate)
            return ReviewPosted(review=review, service=await self._load(fields.service_id))

        def reduce(state: ServicesState, posted: ReviewPosted) -> Dict[str, Any]:
            current = state.current_service
            return {
                "reviews": [posted.review, *state.reviews],
                "services": replace_by_id(state.services, posted.service),
                "current_service": posted.service if current and current.id == posted.service.id else current,
            }

        return await self._run("create_review", call, reduce)

    def clear_current(self) -> None:
        self._replace(current_service=None)
