"""
rrl_core/models.py — RRL Ledger Data Model

Canonical data structures for every record the ledger stores. Entities
are frozen Pydantic models: an update never mutates a stored value, it
builds a new one with merge() and the storage layer replaces the old
value inside the enclosing transaction.

JSON Schema is exported from these models (export_json_schema), never
hand-written separately.
"""

# NOTE: `from __future__ import annotations` is intentionally omitted.
# Pydantic resolves the discriminated union below at class creation time.

import json
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .numeric import U128_MAX


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

# Gallery size per owning entity (restaurant or review).
MAX_MEDIA_PER_ENTITY = 10

# IPFS-style content hash length bounds (inclusive).
MIN_HASH_LENGTH = 10
MAX_HASH_LENGTH = 100

MIN_RATING = 1
MAX_RATING = 5

# A review at or above this rating counts as high quality.
HIGH_QUALITY_RATING = 4

Uint = Annotated[int, Field(ge=0, le=U128_MAX)]
EntityId = Annotated[int, Field(ge=1, le=U128_MAX)]
Principal = Annotated[str, Field(pattern=r"^did:")]
ContentHash = Annotated[
    str, Field(min_length=MIN_HASH_LENGTH, max_length=MAX_HASH_LENGTH)
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class MediaType(str, Enum):
    """Closed set of media kinds a gallery accepts."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class RewardKind(str, Enum):
    REVIEWER = "reviewer"
    LOYALTY = "loyalty"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Entity(BaseModel):
    """Immutable stored value."""

    model_config = ConfigDict(frozen=True)

    def merge(self, **changes):
        """Return a copy with the given fields replaced."""
        return self.model_copy(update=changes)


# ---------------------------------------------------------------------------
# Media attachment (tagged sum type)
# ---------------------------------------------------------------------------

class RestaurantAttachment(Entity):
    """Media item belongs to a restaurant's gallery."""

    kind: Literal["restaurant"] = "restaurant"
    restaurant_id: EntityId


class ReviewAttachment(Entity):
    """Media item belongs to a review's gallery."""

    kind: Literal["review"] = "review"
    review_id: EntityId


MediaAttachment = Annotated[
    Union[RestaurantAttachment, ReviewAttachment],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class Restaurant(Entity):
    """Restaurant aggregate.

    average_rating is 0 until the first review lands, then stays in 1..5.
    owner is fixed at registration.
    """

    restaurant_id: EntityId
    name: str = Field(..., min_length=1)
    cuisine: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    owner: Principal
    active: bool = True
    total_reviews: Uint = 0
    average_rating: int = Field(default=0, ge=0, le=MAX_RATING)
    profile_media_hash: Optional[ContentHash] = None
    media_count: int = Field(default=0, ge=0, le=MAX_MEDIA_PER_ENTITY)
    created_at: Uint = 0


class Review(Entity):
    """One accepted review. Immutable after creation."""

    review_id: EntityId
    restaurant_id: EntityId
    reviewer: Principal
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING)
    comment: str = Field(..., min_length=1)
    timestamp: Uint
    media_count: int = Field(default=0, ge=0, le=MAX_MEDIA_PER_ENTITY)


class ReviewerStats(Entity):
    principal: Principal
    total_reviews: Uint = 0
    high_quality_reviews: Uint = 0
    total_rewards_earned: Uint = 0
    last_reward_timestamp: Uint = 0


class LoyaltyRecord(Entity):
    restaurant_id: EntityId
    customer: Principal
    visit_count: Uint = 0
    total_rewards: Uint = 0
    last_visit_timestamp: Uint = 0


class MediaItem(Entity):
    """A catalogued media reference.

    attached_to is exactly one of RestaurantAttachment / ReviewAttachment;
    "both" or "neither" cannot be expressed. Only `active` ever changes.
    """

    media_id: EntityId
    content_hash: ContentHash
    media_type: MediaType
    uploader: Principal
    attached_to: MediaAttachment
    timestamp: Uint
    active: bool = True

    @property
    def restaurant_id(self) -> Optional[int]:
        if isinstance(self.attached_to, RestaurantAttachment):
            return self.attached_to.restaurant_id
        return None

    @property
    def review_id(self) -> Optional[int]:
        if isinstance(self.attached_to, ReviewAttachment):
            return self.attached_to.review_id
        return None


# ---------------------------------------------------------------------------
# JSON Schema export
# ---------------------------------------------------------------------------

SCHEMA_MODELS = (Restaurant, Review, ReviewerStats, LoyaltyRecord, MediaItem)


def export_json_schema() -> str:
    """Export the JSON Schema of every stored entity, keyed by model name."""
    schemas = {model.__name__: model.model_json_schema() for model in SCHEMA_MODELS}
    return json.dumps(schemas, indent=2)


if __name__ == "__main__":
    print(export_json_schema())
