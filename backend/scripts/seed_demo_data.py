#!/usr/bin/env python3
import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Any, Dict, List

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from servicehub.config import get_settings  # noqa: E402
from servicehub.gateway.factory import create_gateway  # noqa: E402
from servicehub.models import ServiceListingCreate  # noqa: E402
from servicehub.store.root import Store  # noqa: E402
from servicehub.store.services import SERVICES  # noqa: E402

DEMO_PASSWORD = "servicehub-demo"

DEMO_LISTINGS: List[Dict[str, Any]] = [
    {
        "provider": {"email": "john.doe@example.com", "display_name": "John Doe"},
        "listing": {
            "title": "Professional Web Development",
            "description": "Full-stack web development services with modern technologies",
            "price": 500,
            "category": "development",
        },
        "rating": 4.8,
        "review_count": 25,
    },
    {
        "provider": {"email": "jane.smith@example.com", "display_name": "Jane Smith"},
        "listing": {
            "title": "Logo Design",
            "description": "Creative and professional logo design services",
            "price": 200,
            "category": "design",
        },
        "rating": 4.9,
        "review_count": 18,
    },
]


async def _provider_store(gateway, settings, email: str, display_name: str) -> Store:
    store = Store(gateway.new_session(), settings)
    settlement = await store.auth.register(email, DEMO_PASSWORD, display_name, "provider")
    if not settlement.ok:
        settlement = await store.auth.sign_in(email, DEMO_PASSWORD)
    if not settlement.ok:
        raise RuntimeError(f"Could not prepare provider {email}: {settlement.error}")
    return store


async def seed(settings) -> int:
    gateway = create_gateway(settings)
    created = 0
    try:
        for entry in DEMO_LISTINGS:
            provider = entry["provider"]
            store = await _provider_store(gateway, settings, provider["email"], provider["display_name"])
            provider_id = store.state.auth.user.id

            listed = await store.services.list()
            if not listed.ok:
                raise RuntimeError(f"Could not read listings: {listed.error}")
            title = entry["listing"]["title"]
            if any(item.title == title and item.provider_id == provider_id for item in listed.payload):
                print(f"- skipped {title!r} (already seeded)")
                continue

            settlement = await store.services.create(ServiceListingCreate(provider_id=provider_id, **entry["listing"]))
            if not settlement.ok:
                raise RuntimeError(f"Could not create {title!r}: {settlement.error}")
            # Demo aggregates only; no review documents back these numbers.
            await gateway.update_document(
                SERVICES,
                settlement.payload.id,
                {"rating": entry["rating"], "reviewCount": entry["review_count"]},
            )
            created += 1
            print(f"- created {title!r} for {provider['display_name']} ({settlement.payload.id})")
    finally:
        await gateway.close()
    return created


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed demo providers and listings into the configured gateway.")
    parser.add_argument("--db-path", type=str, default="", help="Override SERVICEHUB_DB_PATH for the SQLite gateway.")
    args = parser.parse_args()

    settings = get_settings()
    if args.db_path:
        settings = dataclasses.replace(settings, db_path=args.db_path)

    try:
        created = asyncio.run(seed(settings))
    except RuntimeError as exc:
        print(f"Seeding failed: {exc}")
        return 1
    print(f"Seeded {created} listing(s) into the {settings.gateway_backend} gateway")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
