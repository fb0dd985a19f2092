#!/usr/bin/env python3
"""
RRL Ledger Demo — A small food street over a few blocks

Demonstrates the full ledger lifecycle:
  1. The admin funds the reward pool
  2. Owners register restaurants and upload gallery media
  3. Diners submit reviews (with photos) and check in
  4. Reviewer and loyalty rewards are paid or skipped
  5. The auditor verifies the journal and reconciles state
  6. The journal is exported for `tools/rrl_cli.py view|verify`

Run:
    python examples/demo_ledger.py

Requirements:
    pip install pydantic pydantic-settings cryptography structlog

No network and no external services: identity, clock and custody are
the in-process reference implementations.
"""

import json
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rrl_auditor import Auditor
from rrl_core.config import LedgerSettings
from rrl_core.crypto import generate_keypair
from rrl_core.host import BlockClock, StaticIdentity
from rrl_core.logging import configure_logging
from rrl_core.storage import Storage
from rrl_ledger import Ledger


ADMIN = "did:example:city-food-fund"
OWNERS = {
    "did:example:marco": ("Marco's Trattoria", "Italian", "1 Market Sq"),
    "did:example:yuki": ("Yuki Ramen Bar", "Japanese", "7 Station Rd"),
    "did:example:amara": ("Amara Grill", "Nigerian", "22 River Walk"),
}
DINERS = ["did:example:lena", "did:example:omar", "did:example:priya"]

# (diner, restaurant index, rating, comment, photo count)
REVIEWS = [
    ("did:example:lena", 0, 5, "Best carbonara in town", 2),
    ("did:example:omar", 0, 3, "Good, a bit slow", 0),
    ("did:example:lena", 1, 4, "Rich broth, great noodles", 1),
    ("did:example:priya", 2, 5, "Suya was perfect", 3),
    ("did:example:lena", 2, 4, "Jollof worth the wait", 0),
    ("did:example:omar", 1, 2, "Too salty for me", 0),
]


def photo_hash(n: int) -> str:
    return f"bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbz{n:04d}"


def main():
    configure_logging(level="WARNING")

    print("=" * 72)
    print("  RRL Ledger Demo")
    print("  Restaurant Review Ledger v0.1.0")
    print("=" * 72)

    private_key, _ = generate_keypair()
    identity = StaticIdentity(ADMIN)
    clock = BlockClock(height=1000)
    ledger = Ledger(
        Storage(),
        identity,
        clock,
        settings=LedgerSettings(_env_file=None),
        host_key=private_key,
        admin=ADMIN,
    )
    print(f"\n  Ledger host: {ledger.host_did[:40]}...")

    # --- Step 1: fund the pool ---
    balance = ledger.fund_pool(2_500_000)
    print(f"\n  [block {clock.height}] Pool funded: {balance:,}")

    # --- Step 2: restaurants ---
    restaurant_ids = []
    for owner, (name, cuisine, location) in OWNERS.items():
        clock.advance()
        with identity.act_as(owner):
            rid = ledger.register_restaurant(name, cuisine, location)
            ledger.attach_restaurant_media(rid, [photo_hash(rid * 100)], ["image"])
        restaurant_ids.append(rid)
        print(f"  [block {clock.height}] #{rid} {name} ({cuisine}) registered")

    # --- Step 3: reviews ---
    print()
    photo = 0
    for diner, idx, rating, comment, photos in REVIEWS:
        clock.advance()
        hashes = [photo_hash(photo + i) for i in range(photos)]
        photo += photos
        with identity.act_as(diner):
            result = ledger.execute(
                "submit_review",
                restaurant_id=restaurant_ids[idx],
                rating=rating,
                comment=comment,
                media_hashes=hashes,
                media_types=["image"] * photos,
            )
        who = diner.split(":")[-1]
        if result["ok"]:
            print(f"  [block {clock.height}] {who:6s} → #{restaurant_ids[idx]} "
                  f"{'★' * rating:5s} \"{comment}\"")
        else:
            print(f"  [block {clock.height}] {who:6s} → rejected: {result['error']}")

    # A repeat review is refused
    with identity.act_as("did:example:lena"):
        result = ledger.execute(
            "submit_review", restaurant_id=restaurant_ids[0], rating=1, comment="again"
        )
    print(f"  [block {clock.height}] lena   → #{restaurant_ids[0]} again: {result['error']}")

    # --- Step 4: loyalty check-ins ---
    print()
    with identity.act_as("did:example:priya"):
        for _ in range(4):
            clock.advance()
            visits = ledger.record_visit(restaurant_ids[2])
    print(f"  priya has visited #{restaurant_ids[2]} {visits} times")

    # --- Results ---
    print(f"\n{'━' * 72}")
    print("  RESTAURANTS")
    print(f"{'━' * 72}")
    for rid in restaurant_ids:
        r = ledger.get_restaurant(rid)
        print(f"  #{rid} {r.name:22s} reviews={r.total_reviews} "
              f"avg={r.average_rating} media={r.media_count}")

    print(f"\n{'━' * 72}")
    print("  REWARDS")
    print(f"{'━' * 72}")
    for diner in DINERS:
        stats = ledger.get_reviewer_stats(diner)
        print(f"  {diner.split(':')[-1]:6s} reviews={stats.total_reviews} "
              f"high-quality={stats.high_quality_reviews} "
              f"earned={stats.total_rewards_earned:,} "
              f"account={ledger.get_account_balance(diner):,}")
    print(f"  Pool balance: {ledger.get_pool_balance():,}")

    # --- Step 5: audit ---
    report = Auditor(ledger.storage).audit()
    print(f"\n{'━' * 72}")
    print("  AUDIT")
    print(f"{'━' * 72}")
    print(f"  Journal: {report['journal']['total_entries']} entries, "
          f"{'intact' if report['journal']['journal_valid'] else 'COMPROMISED'}")
    print(f"  State:   {'consistent' if report['state']['consistent'] else 'INCONSISTENT'}")
    for violation in report["state"]["violations"]:
        print(f"    ✗ [{violation['check']}] {violation['detail']}")

    # --- Step 6: export ---
    output_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "output")
    os.makedirs(output_dir, exist_ok=True)
    journal_path = os.path.join(output_dir, "journal.json")
    with open(journal_path, "w", encoding="utf-8") as f:
        json.dump(ledger.export_journal(), f, indent=2)
    print(f"\n  Journal written to {journal_path}")
    print("  Try: python -m tools.rrl_cli verify examples/output/journal.json")
    print(f"{'━' * 72}\n")

    ledger.storage.close()
    return 0 if report["passed"] else 1


if __name__ == "__main__":
    sys.exit(main())
