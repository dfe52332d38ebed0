"""
Pure aggregate rules for listings.

Both the write path (AggregateMutator) and optimistic previews build their
patches here, so an optimistic view always matches what gets written.
"""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from boxsync.core.errors import ValidationError
from boxsync.schemas.listing import LISTING_STATUSES, Comment, ListingPatch, RatingEntry

MIN_RATING = 1
MAX_RATING = 5
COMMENT_MAX_CHARS = 500


def round_half_up(value: float, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def aggregate_rating(ratings: Iterable[RatingEntry]) -> float:
    values = [r.rating for r in ratings]
    if not values:
        return 0.0
    return round_half_up(sum(values) / len(values), 1)


def require_id(value: str | None, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    return value


def validate_rating_value(value: object) -> int:
    # bool is an int subclass; True is not a rating
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("rating must be an integer", field="rating")
    if value < MIN_RATING or value > MAX_RATING:
        raise ValidationError(f"rating must be between {MIN_RATING} and {MAX_RATING}", field="rating")
    return value


def upsert_rating(
    ratings: Iterable[RatingEntry],
    user_id: str,
    value: int,
    comment: str | None = None,
) -> list[RatingEntry]:
    kept = [r for r in ratings if r.user_id != user_id]
    kept.append(RatingEntry(user_id=user_id, rating=value, comment=comment or None))
    return kept


def rating_patch(
    ratings: Iterable[RatingEntry],
    user_id: str,
    value: int,
    comment: str | None,
    now: datetime,
) -> ListingPatch:
    new_ratings = upsert_rating(ratings, user_id, value, comment)
    return ListingPatch(ratings=new_ratings, rating=aggregate_rating(new_ratings), updated_at=now)


def normalize_comment_text(text: object, max_chars: int = COMMENT_MAX_CHARS) -> str:
    if not isinstance(text, str):
        raise ValidationError("comment text must be a string", field="text")
    trimmed = text.strip()
    if not trimmed:
        raise ValidationError("comment text must not be empty", field="text")
    if len(trimmed) > max_chars:
        raise ValidationError(f"comment text must be at most {max_chars} characters", field="text")
    return trimmed


def comment_patch(existing: Iterable[Comment], comment: Comment, now: datetime) -> ListingPatch:
    return ListingPatch(comments=[*existing, comment], updated_at=now)


def validate_status(status: object) -> str:
    if status not in LISTING_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(LISTING_STATUSES)}", field="status")
    return str(status)


def status_patch(status: str, now: datetime) -> ListingPatch:
    return ListingPatch(status=status, updated_at=now)


def found_patch(user_id: str, mark_as_spotted: bool, now: datetime) -> ListingPatch:
    return ListingPatch(status="taken", taken_by=user_id, is_spotted=mark_as_spotted, updated_at=now)
