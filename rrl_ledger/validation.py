"""
rrl_ledger/validation.py — Precondition checks.

Each check raises the error kind its precondition is tied to and never
touches storage, so callers can run them all before the first write.
Media lists are validated in two passes that mirror the submission
order: shape first (InvalidInput), then contents (InvalidHash for
hashes, InvalidInput for types).
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from rrl_core.errors import InvalidHash, InvalidInput, InvalidRating, NotFound
from rrl_core.models import (
    MAX_HASH_LENGTH,
    MAX_MEDIA_PER_ENTITY,
    MAX_RATING,
    MIN_HASH_LENGTH,
    MIN_RATING,
    MediaType,
)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def check_entity_id(value, next_id: int, label: str) -> int:
    """Id must be a positive integer below the counter's next value."""
    if not _is_int(value) or value < 1 or value >= next_id:
        raise NotFound(f"{label} {value!r} does not exist")
    return value


def check_slot(value, owner: str) -> int:
    """Gallery slots run from 0 to MAX_MEDIA_PER_ENTITY - 1."""
    if not _is_int(value) or not 0 <= value < MAX_MEDIA_PER_ENTITY:
        raise NotFound(f"{owner} has no media in slot {value!r}")
    return value


def check_principal(value) -> str:
    if not isinstance(value, str) or not value.startswith("did:"):
        raise InvalidInput(f"Not a principal identifier: {value!r}")
    return value


def check_text(value, field: str, max_length: int) -> str:
    """Non-empty string of at most max_length characters."""
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"{field} must be a non-empty string")
    if len(value) > max_length:
        raise InvalidInput(
            f"{field} is {len(value)} characters; the limit is {max_length}"
        )
    return value


def check_rating(rating) -> int:
    if not _is_int(rating) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRating(
            f"Rating must be an integer from {MIN_RATING} to {MAX_RATING}, got {rating!r}"
        )
    return rating


def check_hash(content_hash) -> str:
    if not isinstance(content_hash, str) or not (
        MIN_HASH_LENGTH <= len(content_hash) <= MAX_HASH_LENGTH
    ):
        raise InvalidHash(
            f"Content hash length must be {MIN_HASH_LENGTH}-{MAX_HASH_LENGTH}, "
            f"got {content_hash!r}"
        )
    return content_hash


def parse_media_type(value) -> MediaType:
    """Turn a caller-supplied tag into MediaType, or fail at the boundary."""
    if isinstance(value, MediaType):
        return value
    try:
        return MediaType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in MediaType)
        raise InvalidInput(f"Media type {value!r} is not one of: {allowed}") from None


def check_media_shape(
    hashes: Sequence,
    types: Sequence,
    *,
    allow_empty: bool,
    existing: int = 0,
) -> None:
    """List-shape rules: equal lengths, size bounds, gallery capacity."""
    if len(hashes) != len(types):
        raise InvalidInput(
            f"Got {len(hashes)} media hashes but {len(types)} media types"
        )
    if not allow_empty and not hashes:
        raise InvalidInput("At least one media item is required")
    if len(hashes) > MAX_MEDIA_PER_ENTITY:
        raise InvalidInput(
            f"At most {MAX_MEDIA_PER_ENTITY} media items per call, got {len(hashes)}"
        )
    if existing + len(hashes) > MAX_MEDIA_PER_ENTITY:
        raise InvalidInput(
            f"Gallery holds {existing} items; adding {len(hashes)} would exceed "
            f"{MAX_MEDIA_PER_ENTITY}"
        )


def check_media_items(
    hashes: Sequence, types: Sequence
) -> List[Tuple[str, MediaType]]:
    """Validate every hash, then every type; return the typed pairs."""
    for content_hash in hashes:
        check_hash(content_hash)
    parsed = [parse_media_type(t) for t in types]
    return list(zip(hashes, parsed))
