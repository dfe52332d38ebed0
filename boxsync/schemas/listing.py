from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


ListingStatus = Literal["active", "taken", "expired"]
LISTING_STATUSES: tuple[str, ...] = ("active", "taken", "expired")


class DocumentModel(BaseModel):
    """
    Base for everything stored in the document store.

    Python attributes are snake_case; stored documents use camelCase keys
    (isSpotted, createdAt, takenBy, ...).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Coordinates(DocumentModel):
    lat: float
    lng: float

    @field_validator("lat")
    @classmethod
    def validate_lat(cls, v: float) -> float:
        if v < -90.0 or v > 90.0:
            raise ValueError("lat must be between -90 and 90")
        return v

    @field_validator("lng")
    @classmethod
    def validate_lng(cls, v: float) -> float:
        if v < -180.0 or v > 180.0:
            raise ValueError("lng must be between -180 and 180")
        return v


class Location(DocumentModel):
    address: str = Field(default="", max_length=300)
    coordinates: Coordinates


class Owner(DocumentModel):
    user_id: str = Field(min_length=1)
    email: str = ""
    username: str = ""


class RatingEntry(DocumentModel):
    user_id: str
    rating: int = Field(ge=1, le=5)
    comment: str | None = None


class Comment(DocumentModel):
    user_id: str
    username: str
    avatar: str | None = None
    text: str
    created_at: datetime


class ListingInput(DocumentModel):
    """Fields supplied by the user creating a listing."""
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5_000)
    category: str = Field(default="other", min_length=1, max_length=80)
    images: list[str] = Field(default_factory=list)
    location: Location
    is_spotted: bool = False
    owner: Owner

    @field_validator("title", "category")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("must not be blank")
        return v2


class Listing(DocumentModel):
    id: str = ""
    title: str
    description: str = ""
    category: str = "other"

    # first image is the cover
    images: list[str] = Field(default_factory=list)
    location: Location
    is_spotted: bool = False
    owner: Owner

    # aggregate of `ratings`, one decimal
    rating: float = 0.0
    ratings: list[RatingEntry] = Field(default_factory=list)
    comments: list[Comment] = Field(default_factory=list)

    status: ListingStatus = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None  # only for non-spotted listings
    taken_by: str | None = None  # only when status == "taken"

    @property
    def cover_image(self) -> str | None:
        return self.images[0] if self.images else None

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Listing":
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        doc.pop("id", None)
        return doc


class AnnotatedListing(Listing):
    distance: str = "Unknown"
    time_posted: str = ""


class ListingPatch(DocumentModel):
    """
    The fields one mutation writes.

    `apply_to` gives the post-mutation state of a listing, which callers use as
    their optimistic view until the write is confirmed or fails.
    """
    rating: float | None = None
    ratings: list[RatingEntry] | None = None
    comments: list[Comment] | None = None
    status: ListingStatus | None = None
    taken_by: str | None = None
    is_spotted: bool | None = None
    updated_at: datetime | None = None

    def apply_to(self, listing: Listing) -> Listing:
        update = {name: getattr(self, name) for name in self.model_fields_set}
        return listing.model_copy(update=update)
