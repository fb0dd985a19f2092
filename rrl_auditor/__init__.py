"""
rrl_auditor — The Auditor Module.

Two independent checks over a ledger database:
- verify_journal():  integrity — hashes, signatures, links, sequence
- reconcile():       consistency — the stored structures agree with
                     each other and with the journal

The auditor only reads. It never repairs; it reports.

Reconciliation checks:
    restaurant totals        total_reviews == accepted reviews
    restaurant averages      average_rating == incremental replay
    uniqueness index         one marker per review, pointing back at it
    reviewer statistics      totals and high-quality counts
    media galleries          dense slots, counts, attachment back-refs
    id counters              dense allocation, nothing skipped
    reward pool              funded − paid == balance
    reward totals            per reviewer / per loyalty record vs journal
    custody accounts         payouts received == account balance
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from rrl_core.journal import EntryType, verify_journal
from rrl_core.logging import get_logger
from rrl_core.models import HIGH_QUALITY_RATING, RewardKind
from rrl_core.storage import Storage

logger = get_logger(__name__)


def replay_average(ratings: List[int]) -> int:
    """Integer-truncated running average, recomputed one rating at a time.

    Matches the ledger's update rule: each step truncates, so the result
    can sit below the exact mean (1, 2, 3 → 1, not 2).
    """
    average = 0
    for total, rating in enumerate(ratings, start=1):
        average = (average * (total - 1) + rating) // total
    return average


class Auditor:
    """Read-only auditor over one ledger Storage.

    Args:
        storage:       The ledger's storage.
        public_key:    Host key to verify the journal against. When None,
                       each entry's key is recovered from its did:key.
        check_custody: Compare payouts with the custody accounts table.
                       Only meaningful with the StorageCustody transfer
                       primitive.
    """

    def __init__(
        self,
        storage: Storage,
        public_key: Optional[Ed25519PublicKey] = None,
        check_custody: bool = True,
    ) -> None:
        self.storage = storage
        self.public_key = public_key
        self.check_custody = check_custody

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_journal(self) -> Dict[str, Any]:
        result = verify_journal(self.storage.get_journal(), self.public_key)
        if not result["journal_valid"]:
            logger.warning(
                "journal_verification_failed",
                invalid=len(result["invalid_entries"]),
                broken_links=len(result["broken_links"]),
            )
        return result

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def reconcile(self) -> Dict[str, Any]:
        """Cross-check every structure. Returns consistent + violations."""
        violations: List[Dict[str, Any]] = []

        def flag(check: str, detail: str) -> None:
            violations.append({"check": check, "detail": detail})

        restaurants = self.storage.get_all_restaurants()
        reviews = self.storage.get_all_reviews()
        media = self.storage.get_all_media()

        self._check_counters(restaurants, reviews, media, flag)
        self._check_restaurants(restaurants, flag)
        self._check_index(reviews, flag)
        self._check_reviewer_stats(reviews, flag)
        self._check_galleries(restaurants, reviews, flag)
        self._check_rewards(flag)

        if violations:
            logger.warning("reconciliation_failed", violations=len(violations))
        return {"consistent": not violations, "violations": violations}

    def audit(self) -> Dict[str, Any]:
        """Both checks in one report."""
        journal = self.verify_journal()
        state = self.reconcile()
        return {
            "passed": journal["journal_valid"] and state["consistent"],
            "journal": journal,
            "state": state,
        }

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_counters(self, restaurants, reviews, media, flag) -> None:
        for name, rows, key in (
            ("restaurant", restaurants, "restaurant_id"),
            ("review", reviews, "review_id"),
            ("media", media, "media_id"),
        ):
            ids = [getattr(row, key) for row in rows]
            expected = list(range(1, self.storage.peek_counter(name)))
            if ids != expected:
                flag("id_counters", f"{name} ids {ids} are not dense up to {len(expected)}")

    def _check_restaurants(self, restaurants, flag) -> None:
        for restaurant in restaurants:
            rid = restaurant.restaurant_id
            ratings = [r.rating for r in self.storage.get_restaurant_reviews(rid)]
            if restaurant.total_reviews != len(ratings):
                flag(
                    "restaurant_totals",
                    f"restaurant {rid}: total_reviews={restaurant.total_reviews}, "
                    f"reviews stored={len(ratings)}",
                )
            expected = replay_average(ratings)
            if restaurant.average_rating != expected:
                flag(
                    "restaurant_averages",
                    f"restaurant {rid}: average_rating={restaurant.average_rating}, "
                    f"replayed={expected}",
                )

    def _check_index(self, reviews, flag) -> None:
        index = {(reviewer, rid): review_id for reviewer, rid, review_id in self.storage.get_review_index()}
        if len(index) != len(reviews):
            flag(
                "uniqueness_index",
                f"{len(index)} markers for {len(reviews)} reviews",
            )
        for review in reviews:
            marker = index.get((review.reviewer, review.restaurant_id))
            if marker != review.review_id:
                flag(
                    "uniqueness_index",
                    f"review {review.review_id}: marker points at {marker}",
                )

    def _check_reviewer_stats(self, reviews, flag) -> None:
        totals: Dict[str, int] = defaultdict(int)
        high_quality: Dict[str, int] = defaultdict(int)
        for review in reviews:
            totals[review.reviewer] += 1
            if review.rating >= HIGH_QUALITY_RATING:
                high_quality[review.reviewer] += 1

        stats_by_principal = {s.principal: s for s in self.storage.get_all_reviewer_stats()}
        for principal in set(totals) | set(stats_by_principal):
            stats = stats_by_principal.get(principal)
            total = stats.total_reviews if stats else 0
            hq = stats.high_quality_reviews if stats else 0
            if total != totals[principal] or hq != high_quality[principal]:
                flag(
                    "reviewer_stats",
                    f"{principal}: stats say {total}/{hq} (total/high-quality), "
                    f"reviews say {totals[principal]}/{high_quality[principal]}",
                )

    def _check_galleries(self, restaurants, reviews, flag) -> None:
        galleries: List[Tuple[str, int, int, List[Tuple[int, int]]]] = []
        for restaurant in restaurants:
            galleries.append((
                "restaurant",
                restaurant.restaurant_id,
                restaurant.media_count,
                self.storage.list_restaurant_media_slots(restaurant.restaurant_id),
            ))
        for review in reviews:
            galleries.append((
                "review",
                review.review_id,
                review.media_count,
                self.storage.list_review_media_slots(review.review_id),
            ))

        for kind, owner_id, count, slots in galleries:
            if [slot for slot, _ in slots] != list(range(count)):
                flag(
                    "media_galleries",
                    f"{kind} {owner_id}: media_count={count}, slots={[s for s, _ in slots]}",
                )
            for slot, media_id in slots:
                item = self.storage.get_media(media_id)
                owner = None
                if item is not None:
                    owner = item.restaurant_id if kind == "restaurant" else item.review_id
                if owner != owner_id:
                    flag(
                        "media_galleries",
                        f"{kind} {owner_id} slot {slot}: media {media_id} "
                        f"is not attached to it",
                    )

    def _check_rewards(self, flag) -> None:
        funded = 0
        paid = 0
        reviewer_paid: Dict[str, int] = defaultdict(int)
        loyalty_paid: Dict[Tuple[int, str], int] = defaultdict(int)
        received: Dict[str, int] = defaultdict(int)

        for entry in self.storage.get_journal():
            if entry.entry_type is EntryType.POOL_FUNDED:
                funded += entry.payload["amount"]
            elif entry.entry_type is EntryType.REWARD_PAID:
                amount = entry.payload["amount"]
                recipient = entry.payload["recipient"]
                paid += amount
                received[recipient] += amount
                if entry.payload["kind"] == RewardKind.REVIEWER.value:
                    reviewer_paid[recipient] += amount
                else:
                    loyalty_paid[(entry.payload["restaurant_id"], recipient)] += amount

        balance = self.storage.get_pool_balance()
        if funded - paid != balance:
            flag("reward_pool", f"funded {funded} − paid {paid} != balance {balance}")

        for stats in self.storage.get_all_reviewer_stats():
            if stats.total_rewards_earned != reviewer_paid.get(stats.principal, 0):
                flag(
                    "reward_totals",
                    f"{stats.principal}: total_rewards_earned={stats.total_rewards_earned}, "
                    f"journal={reviewer_paid.get(stats.principal, 0)}",
                )

        for record in self.storage.get_all_loyalty():
            key = (record.restaurant_id, record.customer)
            if record.total_rewards != loyalty_paid.get(key, 0):
                flag(
                    "reward_totals",
                    f"loyalty {key}: total_rewards={record.total_rewards}, "
                    f"journal={loyalty_paid.get(key, 0)}",
                )

        if self.check_custody:
            for principal, amount in received.items():
                balance = self.storage.get_account_balance(principal)
                if balance != amount:
                    flag(
                        "custody_accounts",
                        f"{principal}: account={balance}, payouts={amount}",
                    )


__all__ = ["Auditor", "replay_average"]
