"""
rrl_ledger — The Ledger Module.

Every state-changing operation on the restaurant review ledger:
- register_restaurant():      Create a restaurant owned by the caller
- submit_review():            The core multi-structure review transition
- attach_restaurant_media():  Owner-only gallery additions
- update_profile_media():     Owner-only profile hash replacement
- toggle_restaurant_status(): Owner-only active flag flip
- record_visit():             Loyalty check-in
- deactivate_media():         Soft-delete a media item
- fund_pool():                Admin-only reward pool top-up

Plus read accessors and execute(), which wraps any operation in a
tagged {"ok": ...} result for front ends.

Architecture:
    Front end → Ledger (validation + orchestration) → Storage / Host

Each operation runs in one storage transaction. All preconditions are
checked before the first write; any failure after that (overflow,
TransferFailure) rolls the whole transaction back, journal entry
included. Committed operations are sealed into the signed journal by
the host key.
"""

import sqlite3
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
)

from rrl_core.config import LedgerSettings, get_settings
from rrl_core.crypto import (
    generate_keypair,
    private_key_from_pem,
    public_key_to_did_key,
)
from rrl_core.errors import AlreadyExists, InvalidInput, LedgerError, NotFound, Unauthorized
from rrl_core.host import (
    ClockProvider,
    IdentityProvider,
    StorageCustody,
    TransferPrimitive,
)
from rrl_core.journal import EntrySeal, EntryType, JournalEntry, seal_entry
from rrl_core.logging import get_logger
from rrl_core.models import (
    HIGH_QUALITY_RATING,
    LoyaltyRecord,
    MediaAttachment,
    MediaItem,
    MediaType,
    Restaurant,
    RestaurantAttachment,
    Review,
    ReviewAttachment,
    ReviewerStats,
    RewardKind,
)
from rrl_core.numeric import bump, checked_add, checked_mul, require_below_ceiling
from rrl_core.storage import Storage

from .rewards import (
    distribute_loyalty_reward,
    distribute_reviewer_reward,
    loyalty_reward_due,
    reviewer_reward_due,
)
from .validation import (
    check_entity_id,
    check_hash,
    check_media_items,
    check_media_shape,
    check_principal,
    check_rating,
    check_slot,
    check_text,
)

logger = get_logger(__name__)


class Ledger:
    """Restaurant review ledger — validates, applies and journals operations.

    Args:
        storage:   Storage backend (SQLite).
        identity:  Supplies the calling principal per operation.
        clock:     Supplies the block timestamp per operation.
        transfer:  Value-transfer primitive. Defaults to StorageCustody,
                   whose transfers share the ledger's transaction.
        settings:  Limits and reward parameters. Defaults to get_settings().
        host_key:  Ed25519 key that seals journal entries. Loaded from
                   settings.host_key_path, or generated, when omitted.
        admin:     Principal allowed to fund the pool. Defaults to the
                   host key's did:key.
    """

    # Operations reachable through execute()
    OPERATIONS = frozenset({
        "register_restaurant",
        "submit_review",
        "attach_restaurant_media",
        "update_profile_media",
        "toggle_restaurant_status",
        "record_visit",
        "deactivate_media",
        "fund_pool",
        "get_restaurant",
        "get_review",
        "get_media",
        "get_restaurant_media",
        "get_review_media",
        "list_restaurant_media",
        "list_review_media",
        "get_reviewer_stats",
        "get_loyalty_record",
        "get_review_id_for",
        "get_pool_balance",
        "get_account_balance",
    })

    def __init__(
        self,
        storage: Storage,
        identity: IdentityProvider,
        clock: ClockProvider,
        transfer: Optional[TransferPrimitive] = None,
        settings: Optional[LedgerSettings] = None,
        host_key: Optional[Ed25519PrivateKey] = None,
        admin: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.identity = identity
        self.clock = clock
        self.settings = settings or get_settings()
        self.transfer = transfer or StorageCustody(storage)
        self.host_key = host_key or self._load_host_key()
        self.host_did = public_key_to_did_key(self.host_key.public_key())
        self.admin = admin or self.host_did

    @classmethod
    def from_settings(
        cls,
        identity: IdentityProvider,
        clock: ClockProvider,
        settings: Optional[LedgerSettings] = None,
    ) -> "Ledger":
        """Open the storage named by settings.db_path and build a ledger on it."""
        settings = settings or get_settings()
        return cls(Storage(settings.db_path), identity, clock, settings=settings)

    def _load_host_key(self) -> Ed25519PrivateKey:
        if self.settings.host_key_path:
            return private_key_from_pem(Path(self.settings.host_key_path).read_bytes())
        private_key, _ = generate_keypair()
        return private_key

    # ------------------------------------------------------------------
    # Operation scaffolding
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str, **context: Any) -> Iterator[Tuple[str, int]]:
        """Open the transaction for one operation and yield (caller, now).

        Caller and timestamp are read once, after the transaction has
        taken the storage lock, so journal timestamps follow commit order.
        """
        caller = None
        try:
            with self.storage.transaction():
                caller = self.identity.current_caller()
                check_principal(caller)
                now = self.clock.current_timestamp()
                yield caller, now
        except LedgerError as e:
            logger.info(
                "operation_rejected",
                operation=name,
                caller=caller,
                error=e.kind.value,
                reason=e.message,
                **context,
            )
            raise

    def _journal(
        self,
        entry_type: EntryType,
        caller: str,
        now: int,
        payload: Dict[str, Any],
    ) -> JournalEntry:
        """Seal and append a journal entry inside the current transaction."""
        last = self.storage.last_journal_entry()
        sequence = last.seal.sequence_number + 1 if last else 0
        previous_hash = last.seal.entry_hash if last else None

        entry = JournalEntry(
            entry_type=entry_type,
            host=self.host_did,
            caller=caller,
            timestamp=now,
            payload=payload,
            seal=EntrySeal(sequence_number=sequence, previous_hash=previous_hash),
        )
        sealed = seal_entry(entry, self.host_key, previous_hash)
        self.storage.append_journal_entry(sealed)
        return sealed

    @property
    def _ceiling(self) -> int:
        return self.settings.counter_ceiling

    def _require_restaurant(self, restaurant_id: Any) -> Restaurant:
        check_entity_id(
            restaurant_id, self.storage.peek_counter("restaurant"), "Restaurant"
        )
        restaurant = self.storage.get_restaurant(restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {restaurant_id} does not exist")
        return restaurant

    def _require_active_restaurant(self, restaurant_id: Any) -> Restaurant:
        restaurant = self._require_restaurant(restaurant_id)
        if not restaurant.active:
            raise Unauthorized(f"Restaurant {restaurant_id} is not active")
        return restaurant

    @staticmethod
    def _require_owner(restaurant: Restaurant, caller: str) -> None:
        if restaurant.owner != caller:
            raise Unauthorized(
                f"Only the owner of restaurant {restaurant.restaurant_id} may do this"
            )

    def _create_media(
        self,
        caller: str,
        now: int,
        attachment: MediaAttachment,
        items: List[Tuple[str, MediaType]],
        first_slot: int,
        set_slot: Callable[[int, int], None],
    ) -> List[int]:
        """Catalogue each item and index it at consecutive slots."""
        media_ids: List[int] = []
        for offset, (content_hash, media_type) in enumerate(items):
            media_id = self.storage.allocate_id("media", self._ceiling)
            self.storage.put_media(
                MediaItem(
                    media_id=media_id,
                    content_hash=content_hash,
                    media_type=media_type,
                    uploader=caller,
                    attached_to=attachment,
                    timestamp=now,
                )
            )
            set_slot(first_slot + offset, media_id)
            media_ids.append(media_id)
        return media_ids

    # ------------------------------------------------------------------
    # Restaurant registry
    # ------------------------------------------------------------------

    def register_restaurant(self, name: str, cuisine: str, location: str) -> int:
        """Register a restaurant owned by the caller. Returns its id."""
        with self._operation("register_restaurant") as (caller, now):
            check_text(name, "name", self.settings.max_name_length)
            check_text(cuisine, "cuisine", self.settings.max_cuisine_length)
            check_text(location, "location", self.settings.max_location_length)
            require_below_ceiling(
                self.storage.peek_counter("restaurant"), self._ceiling,
                "restaurant id counter",
            )

            restaurant_id = self.storage.allocate_id("restaurant", self._ceiling)
            self.storage.put_restaurant(
                Restaurant(
                    restaurant_id=restaurant_id,
                    name=name,
                    cuisine=cuisine,
                    location=location,
                    owner=caller,
                    created_at=now,
                )
            )
            self._journal(
                EntryType.RESTAURANT_REGISTERED, caller, now,
                {"restaurant_id": restaurant_id, "name": name},
            )

        logger.info("restaurant_registered", restaurant_id=restaurant_id, owner=caller)
        return restaurant_id

    def toggle_restaurant_status(self, restaurant_id: int) -> bool:
        """Flip the active flag. Owner only. Returns the new value."""
        with self._operation("toggle_restaurant_status", restaurant_id=restaurant_id) as (caller, now):
            restaurant = self._require_restaurant(restaurant_id)
            self._require_owner(restaurant, caller)

            active = not restaurant.active
            self.storage.put_restaurant(restaurant.merge(active=active))
            self._journal(
                EntryType.RESTAURANT_STATUS_CHANGED, caller, now,
                {"restaurant_id": restaurant_id, "active": active},
            )

        logger.info("restaurant_status_changed", restaurant_id=restaurant_id, active=active)
        return active

    def update_profile_media(self, restaurant_id: int, content_hash: str) -> None:
        """Replace the restaurant's profile media hash. Owner only."""
        with self._operation("update_profile_media", restaurant_id=restaurant_id) as (caller, now):
            restaurant = self._require_restaurant(restaurant_id)
            self._require_owner(restaurant, caller)
            check_hash(content_hash)

            self.storage.put_restaurant(restaurant.merge(profile_media_hash=content_hash))
            self._journal(
                EntryType.PROFILE_MEDIA_UPDATED, caller, now,
                {"restaurant_id": restaurant_id, "content_hash": content_hash},
            )

        logger.info("profile_media_updated", restaurant_id=restaurant_id)

    # ------------------------------------------------------------------
    # Review submission
    # ------------------------------------------------------------------

    def submit_review(
        self,
        restaurant_id: int,
        rating: int,
        comment: str,
        media_hashes: Sequence[str] = (),
        media_types: Sequence[str] = (),
    ) -> int:
        """Submit the caller's review of a restaurant. Returns the review id.

        Preconditions (in order): restaurant id allocated (NotFound),
        restaurant active (Unauthorized), comment (InvalidInput), rating
        (InvalidRating), no prior review by the caller (AlreadyExists),
        media list shape (InvalidInput), hashes (InvalidHash) and types
        (InvalidInput), review counter below ceiling (InvalidInput).

        Effects: review + uniqueness marker + review media, restaurant
        aggregate, reviewer stats (+ reviewer reward), loyalty record
        (+ loyalty reward), journal entry. All or nothing.
        """
        media_hashes = list(media_hashes)
        media_types = list(media_types)

        with self._operation("submit_review", restaurant_id=restaurant_id) as (caller, now):
            restaurant = self._require_active_restaurant(restaurant_id)
            check_text(comment, "comment", self.settings.max_comment_length)
            check_rating(rating)
            if self.storage.get_review_id_for(caller, restaurant_id) is not None:
                raise AlreadyExists(
                    f"{caller} has already reviewed restaurant {restaurant_id}"
                )
            check_media_shape(media_hashes, media_types, allow_empty=True)
            media_items = check_media_items(media_hashes, media_types)
            require_below_ceiling(
                self.storage.peek_counter("review"), self._ceiling, "review id counter"
            )

            # --- Review, uniqueness marker, review media ---
            review_id = self.storage.allocate_id("review", self._ceiling)
            self.storage.insert_review(
                Review(
                    review_id=review_id,
                    restaurant_id=restaurant_id,
                    reviewer=caller,
                    rating=rating,
                    comment=comment,
                    timestamp=now,
                    media_count=len(media_items),
                )
            )
            try:
                self.storage.claim_review_marker(caller, restaurant_id, review_id)
            except sqlite3.IntegrityError:
                raise AlreadyExists(
                    f"{caller} has already reviewed restaurant {restaurant_id}"
                ) from None

            media_ids = self._create_media(
                caller, now,
                ReviewAttachment(review_id=review_id),
                media_items,
                first_slot=0,
                set_slot=partial(self.storage.set_review_media_slot, review_id),
            )

            # --- Restaurant aggregate ---
            new_total = bump(restaurant.total_reviews, self._ceiling, "restaurant review total")
            rating_sum = checked_add(
                checked_mul(restaurant.average_rating, restaurant.total_reviews), rating
            )
            new_average = rating_sum // new_total
            self.storage.put_restaurant(
                restaurant.merge(total_reviews=new_total, average_rating=new_average)
            )

            # --- Reviewer statistics ---
            stats = self.storage.get_reviewer_stats(caller) or ReviewerStats(principal=caller)
            high_quality = stats.high_quality_reviews
            if rating >= HIGH_QUALITY_RATING:
                high_quality = bump(high_quality, self._ceiling, "high-quality review total")
            stats = stats.merge(
                total_reviews=bump(stats.total_reviews, self._ceiling, "reviewer review total"),
                high_quality_reviews=high_quality,
            )
            self.storage.put_reviewer_stats(stats)

            self._journal(
                EntryType.REVIEW_SUBMITTED, caller, now,
                {
                    "review_id": review_id,
                    "restaurant_id": restaurant_id,
                    "rating": rating,
                    "media_ids": media_ids,
                    "total_reviews": new_total,
                    "average_rating": new_average,
                },
            )

            if reviewer_reward_due(self.settings, rating, stats.total_reviews):
                self._pay_reward(RewardKind.REVIEWER, caller, now)

            # --- Loyalty ---
            self._register_visit(restaurant_id, caller, now)

        logger.info(
            "review_submitted",
            review_id=review_id,
            restaurant_id=restaurant_id,
            reviewer=caller,
            rating=rating,
            media=len(media_ids),
        )
        return review_id

    def _register_visit(self, restaurant_id: int, customer: str, now: int) -> int:
        """Count one visit and pay the loyalty reward when it falls due."""
        record = self.storage.get_loyalty(restaurant_id, customer) or LoyaltyRecord(
            restaurant_id=restaurant_id, customer=customer
        )
        record = record.merge(
            visit_count=bump(record.visit_count, self._ceiling, "visit count"),
            last_visit_timestamp=now,
        )
        self.storage.put_loyalty(record)

        if loyalty_reward_due(self.settings, record.visit_count):
            self._pay_reward(RewardKind.LOYALTY, customer, now, restaurant_id=restaurant_id)
        return record.visit_count

    def _pay_reward(
        self,
        kind: RewardKind,
        recipient: str,
        now: int,
        restaurant_id: Optional[int] = None,
    ) -> bool:
        """Run the reward routine for `kind` and journal its outcome."""
        if kind is RewardKind.REVIEWER:
            amount = self.settings.reviewer_reward_amount
            paid = distribute_reviewer_reward(
                self.storage, self.transfer, self.settings, recipient, now
            )
        else:
            amount = self.settings.loyalty_reward_amount
            paid = distribute_loyalty_reward(
                self.storage, self.transfer, self.settings, restaurant_id, recipient, now
            )

        payload: Dict[str, Any] = {
            "kind": kind.value,
            "recipient": recipient,
            "amount": amount,
            "pool_balance": self.storage.get_pool_balance(),
        }
        if restaurant_id is not None:
            payload["restaurant_id"] = restaurant_id

        if paid:
            self._journal(EntryType.REWARD_PAID, recipient, now, payload)
            logger.info("reward_paid", kind=kind.value, recipient=recipient, amount=str(amount))
        else:
            self._journal(EntryType.REWARD_SKIPPED, recipient, now, payload)
            logger.warning(
                "reward_skipped_pool_short",
                kind=kind.value,
                recipient=recipient,
                amount=str(amount),
                pool_balance=str(payload["pool_balance"]),
            )
        return paid

    # ------------------------------------------------------------------
    # Loyalty check-in
    # ------------------------------------------------------------------

    def record_visit(self, restaurant_id: int) -> int:
        """Record a visit by the caller. Returns the new visit count."""
        with self._operation("record_visit", restaurant_id=restaurant_id) as (caller, now):
            self._require_active_restaurant(restaurant_id)
            visits = self._register_visit(restaurant_id, caller, now)
            self._journal(
                EntryType.VISIT_RECORDED, caller, now,
                {"restaurant_id": restaurant_id, "visit_count": visits},
            )

        logger.info("visit_recorded", restaurant_id=restaurant_id, customer=caller, visits=visits)
        return visits

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def attach_restaurant_media(
        self,
        restaurant_id: int,
        media_hashes: Sequence[str],
        media_types: Sequence[str],
    ) -> List[int]:
        """Append media to a restaurant's gallery. Owner only.

        Slots continue from the current media_count. Returns the new
        media ids in slot order.
        """
        media_hashes = list(media_hashes)
        media_types = list(media_types)

        with self._operation("attach_restaurant_media", restaurant_id=restaurant_id) as (caller, now):
            restaurant = self._require_restaurant(restaurant_id)
            self._require_owner(restaurant, caller)
            check_media_shape(
                media_hashes, media_types,
                allow_empty=False, existing=restaurant.media_count,
            )
            media_items = check_media_items(media_hashes, media_types)

            media_ids = self._create_media(
                caller, now,
                RestaurantAttachment(restaurant_id=restaurant_id),
                media_items,
                first_slot=restaurant.media_count,
                set_slot=partial(self.storage.set_restaurant_media_slot, restaurant_id),
            )
            media_count = restaurant.media_count + len(media_ids)
            self.storage.put_restaurant(restaurant.merge(media_count=media_count))
            self._journal(
                EntryType.RESTAURANT_MEDIA_ATTACHED, caller, now,
                {
                    "restaurant_id": restaurant_id,
                    "media_ids": media_ids,
                    "media_count": media_count,
                },
            )

        logger.info(
            "restaurant_media_attached",
            restaurant_id=restaurant_id,
            media_ids=media_ids,
        )
        return media_ids

    def deactivate_media(self, media_id: int) -> None:
        """Soft-delete a media item. Uploader or owning restaurant's owner only.

        Slot indexes and gallery counts are left as they are.
        """
        with self._operation("deactivate_media", media_id=media_id) as (caller, now):
            item = self._require_media(media_id)
            allowed = item.uploader == caller
            if not allowed and item.restaurant_id is not None:
                restaurant = self.storage.get_restaurant(item.restaurant_id)
                allowed = restaurant is not None and restaurant.owner == caller
            if not allowed:
                raise Unauthorized(f"{caller} may not deactivate media {media_id}")

            self.storage.put_media(item.merge(active=False))
            self._journal(
                EntryType.MEDIA_DEACTIVATED, caller, now, {"media_id": media_id}
            )

        logger.info("media_deactivated", media_id=media_id)

    # ------------------------------------------------------------------
    # Reward pool
    # ------------------------------------------------------------------

    def fund_pool(self, amount: int) -> int:
        """Add `amount` to the reward pool. Admin only. Returns the new balance."""
        with self._operation("fund_pool") as (caller, now):
            if caller != self.admin:
                raise Unauthorized("Only the ledger admin may fund the reward pool")
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise InvalidInput(f"Funding amount must be a positive integer, got {amount!r}")

            new_balance = self.storage.add_to_pool(amount)
            self._journal(
                EntryType.POOL_FUNDED, caller, now,
                {"amount": amount, "pool_balance": new_balance},
            )

        logger.info("pool_funded", amount=str(amount), pool_balance=str(new_balance))
        return new_balance

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get_restaurant(self, restaurant_id: int) -> Restaurant:
        return self._require_restaurant(restaurant_id)

    def get_review(self, review_id: int) -> Review:
        check_entity_id(review_id, self.storage.peek_counter("review"), "Review")
        review = self.storage.get_review(review_id)
        if review is None:
            raise NotFound(f"Review {review_id} does not exist")
        return review

    def _require_media(self, media_id: int) -> MediaItem:
        check_entity_id(media_id, self.storage.peek_counter("media"), "Media")
        item = self.storage.get_media(media_id)
        if item is None:
            raise NotFound(f"Media {media_id} does not exist")
        return item

    def get_media(self, media_id: int) -> MediaItem:
        return self._require_media(media_id)

    def get_restaurant_media(self, restaurant_id: int, slot: int) -> MediaItem:
        """Media at (restaurant, slot)."""
        self._require_restaurant(restaurant_id)
        check_slot(slot, f"Restaurant {restaurant_id}")
        media_id = self.storage.get_restaurant_media_id(restaurant_id, slot)
        if media_id is None:
            raise NotFound(f"Restaurant {restaurant_id} has no media in slot {slot}")
        return self._require_media(media_id)

    def get_review_media(self, review_id: int, slot: int) -> MediaItem:
        """Media at (review, slot)."""
        self.get_review(review_id)
        check_slot(slot, f"Review {review_id}")
        media_id = self.storage.get_review_media_id(review_id, slot)
        if media_id is None:
            raise NotFound(f"Review {review_id} has no media in slot {slot}")
        return self._require_media(media_id)

    def list_restaurant_media(self, restaurant_id: int) -> List[MediaItem]:
        self._require_restaurant(restaurant_id)
        return [
            self._require_media(media_id)
            for _, media_id in self.storage.list_restaurant_media_slots(restaurant_id)
        ]

    def list_review_media(self, review_id: int) -> List[MediaItem]:
        self.get_review(review_id)
        return [
            self._require_media(media_id)
            for _, media_id in self.storage.list_review_media_slots(review_id)
        ]

    def get_reviewer_stats(self, principal: str) -> ReviewerStats:
        """Stats for a principal; zero state if they never reviewed."""
        check_principal(principal)
        return self.storage.get_reviewer_stats(principal) or ReviewerStats(principal=principal)

    def get_loyalty_record(self, restaurant_id: int, customer: str) -> LoyaltyRecord:
        """Loyalty record for (restaurant, customer); zero state if absent."""
        check_principal(customer)
        self._require_restaurant(restaurant_id)
        return self.storage.get_loyalty(restaurant_id, customer) or LoyaltyRecord(
            restaurant_id=restaurant_id, customer=customer
        )

    def get_review_id_for(self, reviewer: str, restaurant_id: int) -> Optional[int]:
        check_principal(reviewer)
        self._require_restaurant(restaurant_id)
        return self.storage.get_review_id_for(reviewer, restaurant_id)

    def get_pool_balance(self) -> int:
        return self.storage.get_pool_balance()

    def get_account_balance(self, principal: str) -> int:
        check_principal(principal)
        return self.storage.get_account_balance(principal)

    @property
    def restaurant_count(self) -> int:
        return self.storage.peek_counter("restaurant") - 1

    @property
    def review_count(self) -> int:
        return self.storage.peek_counter("review") - 1

    def export_journal(self) -> List[Dict[str, Any]]:
        """The whole journal as JSON-ready dicts, in sequence order."""
        return [entry.model_dump(mode="json") for entry in self.storage.get_journal()]

    # ------------------------------------------------------------------
    # Tagged-result dispatch
    # ------------------------------------------------------------------

    def execute(self, operation: str, **params: Any) -> Dict[str, Any]:
        """Run a named operation and return a tagged result.

        {"ok": True, "value": ...} on success,
        {"ok": False, "error": "<kind>", "message": ...} on failure.
        """
        if operation not in self.OPERATIONS:
            return InvalidInput(f"Unknown operation: {operation}").to_dict()
        try:
            value = getattr(self, operation)(**params)
        except LedgerError as e:
            return e.to_dict()
        return {"ok": True, "value": _to_jsonable(value)}


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


__all__ = ["Ledger"]
