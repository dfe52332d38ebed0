from datetime import datetime, timedelta, timezone

import pytest

from boxsync.core.ids import gen_id

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

BERLIN = {"lat": 52.5200, "lng": 13.4050}
POTSDAM = {"lat": 52.3906, "lng": 13.0645}


def listing_doc(
    *,
    title: str = "Box of books",
    description: str = "Paperbacks, mostly sci-fi",
    category: str = "books",
    owner_id: str = "owner-1",
    created_at: datetime = T0,
    coordinates: dict | None = None,
    status: str = "active",
    ratings: list[dict] | None = None,
    is_spotted: bool = False,
) -> dict:
    ratings = ratings or []
    doc = {
        "title": title,
        "description": description,
        "category": category,
        "images": ["https://img.example/cover.jpg", "https://img.example/2.jpg"],
        "location": {"address": "Alexanderplatz 1", "coordinates": dict(coordinates or BERLIN)},
        "isSpotted": is_spotted,
        "owner": {"userId": owner_id, "email": f"{owner_id}@example.com", "username": owner_id},
        "rating": round(sum(r["rating"] for r in ratings) / len(ratings), 1) if ratings else 0.0,
        "ratings": ratings,
        "comments": [],
        "status": status,
        "createdAt": created_at,
        "updatedAt": created_at,
    }
    if not is_spotted:
        doc["expiresAt"] = created_at + timedelta(hours=48)
    return doc


@pytest.fixture
def seed_listing(store):
    listing_id = gen_id("lst")
    store.seed("listings", listing_id, listing_doc())
    store.seed("users", "owner-1", {"itemsGiven": 0, "itemsTaken": 0})
    store.seed("users", "taker-1", {"itemsGiven": 0, "itemsTaken": 0})
    store.calls.clear()
    return listing_id


@pytest.fixture
def seed_many(store):
    ids = []
    for i, category in enumerate(["books", "toys", "books", "kitchen", "toys"]):
        listing_id = f"lst_{i}"
        store.seed(
            "listings",
            listing_id,
            listing_doc(title=f"Item {i}", category=category, created_at=T0 + timedelta(hours=i)),
        )
        ids.append(listing_id)
    store.seed("listings", "lst_taken", listing_doc(title="Gone", status="taken"))
    store.calls.clear()
    return ids
