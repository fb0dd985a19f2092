"""
test/test_auditor.py — Auditor and CLI

Run: pytest test/test_auditor.py -v
  or: python test/test_auditor.py

Tests:
  - A busy ledger audits clean
  - Each reconciliation check catches its own kind of drift
  - Journal tampering in the database is caught
  - CLI: view, verify, audit, keygen, schema
"""

import io
import json
import os
import sys
import tempfile
from contextlib import redirect_stdout

# Add parent to path for direct execution
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rrl_auditor import Auditor, replay_average
from rrl_core import (
    BlockClock,
    LedgerSettings,
    StaticIdentity,
    Storage,
    did_key_to_public_key,
    generate_keypair,
    private_key_from_pem,
    public_key_to_did_key,
)
from rrl_ledger import Ledger
from tools.rrl_cli import main as cli_main


OWNER = "did:example:owner"
ALICE = "did:example:alice"
BOB = "did:example:bob"
ADMIN = "did:example:admin"


# ==================================================================
# Helpers
# ==================================================================

def busy_ledger(db_path: str = ":memory:", transfer=None):
    """A ledger with restaurants, reviews, media, visits and payouts."""
    private_key, public_key = generate_keypair()
    identity = StaticIdentity(OWNER)
    clock = BlockClock()
    ledger = Ledger(
        Storage(db_path),
        identity,
        clock,
        transfer=transfer,
        settings=LedgerSettings(_env_file=None),
        host_key=private_key,
        admin=ADMIN,
    )

    with identity.act_as(ADMIN):
        ledger.fund_pool(3_000_000)

    places = [
        ledger.register_restaurant(f"Place {i}", "Tapas", "Old Town") for i in range(3)
    ]
    ledger.attach_restaurant_media(places[0], ["QmInteriorShot01", "QmMenuBoard00002"], ["image", "image"])
    ledger.update_profile_media(places[1], "QmProfileLogo001")

    for reviewer, ratings in ((ALICE, (5, 4, 5)), (BOB, (1, 2, 3))):
        with identity.act_as(reviewer):
            for rid, rating in zip(places, ratings):
                clock.advance()
                ledger.submit_review(rid, rating, "noted", ["QmFoodPhoto" + reviewer[-3:]], ["image"])

    with identity.act_as(BOB):
        for _ in range(4):
            clock.advance()
            ledger.record_visit(places[2])

    ledger.deactivate_media(1)
    return ledger, public_key


def violations(report, check: str) -> list:
    return [v for v in report["violations"] if v["check"] == check]


def run_cli(*argv) -> tuple:
    out = io.StringIO()
    with redirect_stdout(out):
        code = cli_main(list(argv))
    return code, out.getvalue()


# ==================================================================
# Clean ledger
# ==================================================================

def test_replay_average():
    assert replay_average([]) == 0
    assert replay_average([5, 4, 4]) == 4
    assert replay_average([1, 2, 3]) == 1
    assert replay_average([3]) == 3
    print("  PASS: test_replay_average")


def test_busy_ledger_audits_clean():
    ledger, public_key = busy_ledger()
    # Sanity: one reviewer payout and one loyalty payout happened
    assert ledger.get_reviewer_stats(ALICE).total_rewards_earned == 1_000_000
    assert ledger.get_loyalty_record(3, BOB).total_rewards == 500_000

    report = Auditor(ledger.storage, public_key).audit()
    assert report["passed"], report
    assert report["journal"]["total_entries"] == len(ledger.export_journal())
    print("  PASS: test_busy_ledger_audits_clean")


def test_custody_check_optional():
    """With a foreign transfer primitive, custody accounts stay empty."""

    class Sink:
        def transfer(self, amount, to):
            pass

    ledger, _ = busy_ledger(transfer=Sink())
    assert Auditor(ledger.storage, check_custody=False).audit()["passed"]
    report = Auditor(ledger.storage).reconcile()
    assert violations(report, "custody_accounts")
    print("  PASS: test_custody_check_optional")


# ==================================================================
# Drift detection
# ==================================================================

def test_detects_restaurant_drift():
    ledger, _ = busy_ledger()
    storage = ledger.storage
    r = storage.get_restaurant(1)
    storage.put_restaurant(r.merge(total_reviews=r.total_reviews + 1))
    r2 = storage.get_restaurant(2)
    storage.put_restaurant(r2.merge(average_rating=5))

    report = Auditor(storage).reconcile()
    assert not report["consistent"]
    assert violations(report, "restaurant_totals")
    assert violations(report, "restaurant_averages")
    print("  PASS: test_detects_restaurant_drift")


def test_detects_missing_marker():
    ledger, _ = busy_ledger()
    ledger.storage.conn.execute(
        "DELETE FROM review_index WHERE reviewer = ? AND restaurant_id = 1", (ALICE,)
    )
    report = Auditor(ledger.storage).reconcile()
    assert violations(report, "uniqueness_index")
    print("  PASS: test_detects_missing_marker")


def test_detects_stats_drift():
    ledger, _ = busy_ledger()
    stats = ledger.storage.get_reviewer_stats(BOB)
    ledger.storage.put_reviewer_stats(stats.merge(high_quality_reviews=1))
    report = Auditor(ledger.storage).reconcile()
    assert [v["check"] for v in report["violations"]] == ["reviewer_stats"]
    print("  PASS: test_detects_stats_drift")


def test_detects_gallery_drift():
    ledger, _ = busy_ledger()
    r = ledger.storage.get_restaurant(1)
    ledger.storage.put_restaurant(r.merge(media_count=3))
    report = Auditor(ledger.storage).reconcile()
    assert violations(report, "media_galleries")
    print("  PASS: test_detects_gallery_drift")


def test_detects_pool_and_reward_drift():
    ledger, _ = busy_ledger()
    storage = ledger.storage
    storage.conn.execute("UPDATE reward_pool SET balance = '1' WHERE pool_id = 1")
    stats = storage.get_reviewer_stats(ALICE)
    storage.put_reviewer_stats(stats.merge(total_rewards_earned=0))
    storage.credit_account(BOB, 1)

    report = Auditor(storage).reconcile()
    assert violations(report, "reward_pool")
    assert violations(report, "reward_totals")
    assert violations(report, "custody_accounts")
    print("  PASS: test_detects_pool_and_reward_drift")


def test_detects_counter_gap():
    ledger, _ = busy_ledger()
    ledger.storage.conn.execute(
        "UPDATE counters SET next_value = next_value + 1 WHERE name = 'media'"
    )
    report = Auditor(ledger.storage).reconcile()
    assert violations(report, "id_counters")
    print("  PASS: test_detects_counter_gap")


def test_detects_journal_tampering():
    ledger, public_key = busy_ledger()
    storage = ledger.storage
    entry = storage.get_journal()[0]
    forged = entry.model_copy(update={"payload": {"amount": 10**12, "pool_balance": 10**12}})
    storage.conn.execute(
        "UPDATE journal SET data = ? WHERE sequence_number = 0", (forged.model_dump_json(),)
    )
    report = Auditor(storage, public_key).audit()
    assert not report["passed"]
    assert report["journal"]["invalid_entries"][0]["sequence_number"] == 0
    # The forged funding also breaks the pool arithmetic
    assert violations(report["state"], "reward_pool")
    print("  PASS: test_detects_journal_tampering")


# ==================================================================
# CLI
# ==================================================================

def test_cli_view_and_verify():
    ledger, _ = busy_ledger()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "journal.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(ledger.export_journal(), f)

        code, out = run_cli("view", path)
        assert code == 0
        assert "REVIEW" in out and "REWARD" in out

        code, out = run_cli("view", path, "--compact")
        assert code == 0 and "───" not in out

        code, out = run_cli("verify", path)
        assert code == 0, out
        assert "JOURNAL INTACT" in out

        journal = ledger.export_journal()
        journal[3]["payload"]["name"] = "Renamed"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(journal, f)
        code, out = run_cli("verify", path)
        assert code == 1
        assert "COMPROMISED" in out and "seq #3" in out

    code, out = run_cli("verify", "/nonexistent/journal.json")
    assert code == 1 and "File not found" in out
    print("  PASS: test_cli_view_and_verify")


def test_cli_audit():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "ledger.db")
        ledger, _ = busy_ledger(db_path)
        ledger.storage.close()

        code, out = run_cli("audit", db_path)
        assert code == 0, out
        assert "State: consistent" in out

        with Storage(db_path) as storage:
            storage.conn.execute("UPDATE reward_pool SET balance = '0' WHERE pool_id = 1")
        code, out = run_cli("audit", db_path)
        assert code == 1
        assert "[reward_pool]" in out
    print("  PASS: test_cli_audit")


def test_cli_keygen():
    with tempfile.TemporaryDirectory() as tmpdir:
        key_path = os.path.join(tmpdir, "host.pem")
        code, out = run_cli("keygen", key_path)
        assert code == 0
        did = out.strip()
        with open(key_path, "rb") as f:
            private_key = private_key_from_pem(f.read())
        assert public_key_to_did_key(private_key.public_key()) == did
        assert did_key_to_public_key(did) is not None

        # Never overwrite an existing key
        code, out = run_cli("keygen", key_path)
        assert code == 1 and "Refusing" in out
    print("  PASS: test_cli_keygen")


def test_cli_schema():
    code, out = run_cli("schema")
    assert code == 0
    assert "MediaItem" in json.loads(out)
    print("  PASS: test_cli_schema")


def run_all():
    print("\n--- Clean Ledger ---")
    test_replay_average()
    test_busy_ledger_audits_clean()
    test_custody_check_optional()

    print("\n--- Drift Detection ---")
    test_detects_restaurant_drift()
    test_detects_missing_marker()
    test_detects_stats_drift()
    test_detects_gallery_drift()
    test_detects_pool_and_reward_drift()
    test_detects_counter_gap()
    test_detects_journal_tampering()

    print("\n--- CLI ---")
    test_cli_view_and_verify()
    test_cli_audit()
    test_cli_keygen()
    test_cli_schema()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED")
    print("=" * 60)


if __name__ == "__main__":
    run_all()
