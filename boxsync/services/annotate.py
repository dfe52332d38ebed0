from __future__ import annotations

import math
from datetime import datetime

from boxsync.schemas.listing import AnnotatedListing, Coordinates, Listing

EARTH_RADIUS_KM = 6371.0
UNKNOWN_DISTANCE = "Unknown"


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def format_distance(km: float | None) -> str:
    if km is None:
        return UNKNOWN_DISTANCE
    if km < 1:
        return f"{round(km * 1000)}m"
    return f"{km:.1f}km"


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'} ago"


def format_age(created_at: datetime | None, now: datetime) -> str:
    seconds = 0.0 if created_at is None else max(0.0, (now - created_at).total_seconds())
    days = int(seconds // 86400)
    if days >= 1:
        return _plural(days, "day")
    hours = int(seconds // 3600)
    if hours >= 1:
        return _plural(hours, "hour")
    return _plural(max(1, int(seconds // 60)), "minute")


def annotate(listing: Listing, user_location: Coordinates | None, now: datetime) -> AnnotatedListing:
    km = haversine_km(user_location, listing.location.coordinates) if user_location is not None else None
    return AnnotatedListing.model_validate({
        **dict(listing),
        "distance": format_distance(km),
        "time_posted": format_age(listing.created_at, now),
    })
