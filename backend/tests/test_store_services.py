import asyncio
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicehub.config import Settings
from servicehub.errors import UploadError, WriteError
from servicehub.gateway.sqlite_gateway import SqliteBackend, SqliteGateway
from servicehub.models import ImageUpload, ReviewCreate, ServiceListingCreate, ServiceListingUpdate
from servicehub.store.services import SERVICES, ServicesContainer


def _ticking_clock():
    start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


def _backend(tmp_path):
    return SqliteBackend(db_path=str(tmp_path / "hub.sqlite3"), blob_dir=str(tmp_path / "blobs"))


def _settings(tmp_path):
    return Settings(db_path=str(tmp_path / "hub.sqlite3"), blob_dir=str(tmp_path / "blobs"))


def _listing(title="Logo Design", category="design", price=200.0, provider_id="prov_1"):
    return ServiceListingCreate(
        provider_id=provider_id,
        title=title,
        description=f"{title} for small businesses",
        category=category,
        price=price,
    )


class _BlockingGateway(SqliteGateway):
    def __init__(self, backend):
        super().__init__(backend)
        self.release = None

    async def query(self, *args, **kwargs):
        await self.release.wait()
        return await super().query(*args, **kwargs)


class _BrokenWritesGateway(SqliteGateway):
    async def add_document(self, collection, data):
        raise WriteError("Create services/x failed: disk I/O error")


class _BrokenBucketGateway(SqliteGateway):
    async def upload_blob(self, path, content, content_type="application/octet-stream"):
        raise UploadError("Storage bucket unavailable")


def test_operation_is_pending_before_it_settles(tmp_path):
    gateway = _BlockingGateway(_backend(tmp_path))
    services = ServicesContainer(gateway, _settings(tmp_path))

    async def scenario():
        gateway.release = asyncio.Event()
        services._replace(error="stale failure")
        task = asyncio.create_task(services.list())
        await asyncio.sleep(0)
        pending = services.state
        gateway.release.set()
        settled = await task
        return pending, settled

    pending, settled = asyncio.run(scenario())
    assert pending.is_loading is True
    assert pending.error is None
    assert settled.ok
    assert services.state.is_loading is False


def test_create_with_image_uploads_then_writes_listing(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path), clock=_ticking_clock())
    image = ImageUpload(filename="uploads/logo.png", content=b"\x89PNG", content_type="image/png")

    settlement = asyncio.run(services.create(_listing(), image))

    assert settlement.ok
    listing = settlement.payload
    assert listing.rating == 0
    assert listing.review_count == 0
    assert len(listing.id) == 20
    assert listing.image_url.startswith("/blobs/services/")
    assert listing.image_url.endswith("_logo.png")
    stored = tmp_path / "blobs" / listing.image_url[len("/blobs/"):]
    assert stored.read_bytes() == b"\x89PNG"
    assert services.state.services == [listing]
    assert services.state.current_service == listing


def test_failed_upload_writes_no_listing(tmp_path):
    backend = _backend(tmp_path)
    services = ServicesContainer(_BrokenBucketGateway(backend), _settings(tmp_path))
    image = ImageUpload(filename="logo.png", content=b"data")

    settlement = asyncio.run(services.create(_listing(), image))

    assert settlement.status == "rejected"
    assert settlement.error == "Storage bucket unavailable"
    assert settlement.error_type == "UploadError"
    assert services.state.services == []
    assert backend.query(SERVICES, [], None, False) == []


def test_rejected_write_leaves_collections_untouched(tmp_path):
    backend = _backend(tmp_path)
    healthy = ServicesContainer(SqliteGateway(backend), _settings(tmp_path))
    asyncio.run(healthy.create(_listing()))
    before = healthy.state.services

    broken = ServicesContainer(_BrokenWritesGateway(backend), _settings(tmp_path))
    broken._replace(services=before)
    settlement = asyncio.run(broken.create(_listing(title="Brand Guidelines")))

    assert settlement.status == "rejected"
    assert broken.state.error == "Create services/x failed: disk I/O error"
    assert broken.state.services == before
    assert broken.state.is_loading is False


def test_list_by_category_returns_only_that_category(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path))

    async def scenario():
        await services.create(_listing(title="Logo Design"))
        await services.create(_listing(title="Professional Web Development", category="development", price=500))
        await services.create(_listing(title="Poster Design"))
        return await services.list_by_category("design")

    settlement = asyncio.run(scenario())

    assert settlement.ok
    assert sorted(item.title for item in settlement.payload) == ["Logo Design", "Poster Design"]
    assert all(item.category == "design" for item in services.state.services)


def test_update_and_delete_keep_list_in_sync(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path))

    async def scenario():
        created = await services.create(_listing())
        listing_id = created.payload.id
        updated = await services.update(listing_id, ServiceListingUpdate(price=250.0, title="Logo Design Pro"))
        after_update = services.state
        deleted = await services.delete(listing_id)
        return updated, after_update, deleted

    updated, after_update, deleted = asyncio.run(scenario())

    assert updated.ok
    assert updated.payload.price == 250.0
    assert after_update.services[0].title == "Logo Design Pro"
    assert after_update.current_service.title == "Logo Design Pro"
    assert deleted.ok
    assert services.state.services == []
    assert services.state.current_service is None


def test_get_by_id_missing_listing_is_not_found(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path))

    settlement = asyncio.run(services.get_by_id("missing"))

    assert settlement.status == "rejected"
    assert settlement.error == "Service not found"
    assert settlement.error_type == "NotFoundError"


def test_reviews_recompute_listing_rating(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path), clock=_ticking_clock())

    def review(listing_id, booking_id, rating):
        return ReviewCreate(
            service_id=listing_id,
            booking_id=booking_id,
            customer_id="cust_1",
            provider_id="prov_1",
            rating=rating,
            comment="Great work",
        )

    async def scenario():
        created = await services.create(_listing())
        listing_id = created.payload.id
        await services.create_review(review(listing_id, "bk_1", 4))
        posted = await services.create_review(review(listing_id, "bk_2", 5))
        listed = await services.list_reviews(listing_id)
        return posted, listed

    posted, listed = asyncio.run(scenario())

    assert posted.ok
    assert posted.payload.service.rating == 4.5
    assert posted.payload.service.review_count == 2
    assert services.state.services[0].review_count == 2
    assert [item.booking_id for item in listed.payload] == ["bk_2", "bk_1"]


def test_second_review_for_same_booking_is_conflict(tmp_path):
    backend = _backend(tmp_path)
    services = ServicesContainer(SqliteGateway(backend), _settings(tmp_path), clock=_ticking_clock())

    def review(listing_id, rating):
        return ReviewCreate(
            service_id=listing_id,
            booking_id="bk_1",
            customer_id="cust_1",
            provider_id="prov_1",
            rating=rating,
        )

    async def scenario():
        created = await services.create(_listing())
        first = await services.create_review(review(created.payload.id, 5))
        second = await services.create_review(review(created.payload.id, 1))
        return created.payload.id, first, second

    listing_id, first, second = asyncio.run(scenario())

    assert first.ok
    assert first.payload.review.id == "bk_1"
    assert second.status == "rejected"
    assert second.error_type == "ConflictError"
    assert second.error == "This booking has already been reviewed"
    stored = backend.get_document(SERVICES, listing_id)
    assert stored["reviewCount"] == 1
    assert stored["rating"] == 5
    assert services.state.services[0].review_count == 1
    assert len(services.state.reviews) == 1


def test_clear_error_and_unknown_operation(tmp_path):
    services = ServicesContainer(SqliteGateway(_backend(tmp_path)), _settings(tmp_path))
    asyncio.run(services.get_by_id("missing"))
    assert services.state.error == "Service not found"

    asyncio.run(services.handle("clear_error", {}))
    assert services.state.error is None

    with pytest.raises(ValueError):
        asyncio.run(services.handle("drop_everything", {}))
