"""
rrl_ledger/rewards.py — Reward distribution from the shared pool.

Both routines follow the same shape:

    read pool → short? return False
              → compare-and-swap the decrement (retry on a lost race)
              → transfer to the recipient (TransferFailure propagates)
              → credit the recipient's record

A short pool is a normal outcome, never an exception. A failing
transfer is fatal: it propagates out of the enclosing transaction,
which rolls back the pool decrement together with everything else.
"""

from __future__ import annotations

from rrl_core.config import LedgerSettings
from rrl_core.errors import TransferFailure
from rrl_core.host import TransferPrimitive
from rrl_core.logging import get_logger
from rrl_core.models import HIGH_QUALITY_RATING, LoyaltyRecord, ReviewerStats
from rrl_core.numeric import checked_add, checked_sub
from rrl_core.storage import Storage

logger = get_logger(__name__)

# Compare-and-swap attempts before giving up on a contended pool.
_CAS_ATTEMPTS = 8


def draw_from_pool(storage: Storage, amount: int) -> bool:
    """Decrement the pool by `amount` if it holds at least that much."""
    for _ in range(_CAS_ATTEMPTS):
        balance = storage.get_pool_balance()
        if balance < amount:
            return False
        if storage.compare_and_set_pool(balance, checked_sub(balance, amount)):
            return True
        logger.debug("pool_cas_retry", expected=str(balance), amount=str(amount))
    raise TransferFailure(
        f"Reward pool balance kept changing; gave up after {_CAS_ATTEMPTS} attempts"
    )


def distribute_reviewer_reward(
    storage: Storage,
    transfer: TransferPrimitive,
    settings: LedgerSettings,
    reviewer: str,
    now: int,
) -> bool:
    """Pay the reviewer reward if the pool covers it.

    Returns True on payout, False if the pool is short.
    """
    amount = settings.reviewer_reward_amount
    if not draw_from_pool(storage, amount):
        return False

    transfer.transfer(amount, reviewer)

    stats = storage.get_reviewer_stats(reviewer) or ReviewerStats(principal=reviewer)
    storage.put_reviewer_stats(
        stats.merge(
            total_rewards_earned=checked_add(stats.total_rewards_earned, amount),
            last_reward_timestamp=now,
        )
    )
    return True


def distribute_loyalty_reward(
    storage: Storage,
    transfer: TransferPrimitive,
    settings: LedgerSettings,
    restaurant_id: int,
    customer: str,
    now: int,
) -> bool:
    """Pay the loyalty reward for (restaurant, customer) if the pool covers it."""
    amount = settings.loyalty_reward_amount
    if not draw_from_pool(storage, amount):
        return False

    transfer.transfer(amount, customer)

    record = storage.get_loyalty(restaurant_id, customer) or LoyaltyRecord(
        restaurant_id=restaurant_id, customer=customer
    )
    storage.put_loyalty(
        record.merge(total_rewards=checked_add(record.total_rewards, amount))
    )
    return True


def reviewer_reward_due(settings: LedgerSettings, rating: int, total_reviews: int) -> bool:
    """High-quality review by a reviewer with enough reviews behind them."""
    return rating >= HIGH_QUALITY_RATING and total_reviews >= settings.reviewer_reward_min_reviews


def loyalty_reward_due(settings: LedgerSettings, visit_count: int) -> bool:
    """Every Nth visit, once past the minimum."""
    return (
        visit_count > settings.loyalty_min_visits
        and visit_count % settings.loyalty_reward_interval == 0
    )
