"""
test/test_journal.py — Signed, hash-chained operation journal

Run: pytest test/test_journal.py -v
  or: python test/test_journal.py

Test structure:
  1. Seal and verify single entries
  2. Journal verification (links, sequence, timestamps, tampering)
  3. Journal written by the ledger
"""

import json
import os
import sys
import tempfile

# Add parent to path for direct execution
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from rrl_core import (
    BlockClock,
    EntrySeal,
    EntryType,
    InvalidRating,
    JournalEntry,
    LedgerSettings,
    StaticIdentity,
    Storage,
    canonicalize_entry,
    compute_journal_digest,
    generate_keypair,
    private_key_to_pem,
    public_key_to_did_key,
    seal_entry,
    sha256_hex,
    verify_entry,
    verify_journal,
)
from rrl_ledger import Ledger


# ==================================================================
# Helpers
# ==================================================================

_priv, _pub = generate_keypair()
_host = public_key_to_did_key(_pub)
CALLER = "did:example:alice"


def make_entry(seq: int, previous_hash: str = None, timestamp: int = None, **payload) -> JournalEntry:
    return JournalEntry(
        entry_type=EntryType.REVIEW_SUBMITTED,
        host=_host,
        caller=CALLER,
        timestamp=seq if timestamp is None else timestamp,
        payload=payload or {"review_id": seq + 1, "rating": 4},
        seal=EntrySeal(sequence_number=seq, previous_hash=previous_hash),
    )


def build_journal(length: int, private_key=None) -> list:
    private_key = private_key or _priv
    entries = []
    prev_hash = None
    for seq in range(length):
        sealed = seal_entry(make_entry(seq, prev_hash), private_key, prev_hash)
        entries.append(sealed)
        prev_hash = sealed.seal.entry_hash
    return entries


# ==================================================================
# 1. Seal and verify
# ==================================================================

def test_seal_genesis():
    sealed = seal_entry(make_entry(0), _priv)
    assert sealed.seal.previous_hash is None
    assert sealed.seal.entry_hash == sha256_hex(canonicalize_entry(sealed))
    assert sealed.seal.signature.signer == _host

    v = verify_entry(sealed, _pub)
    assert v["hash_valid"] and v["signature_valid"] and v["signer_match"], v
    # Key recovered from the host did:key
    v = verify_entry(sealed)
    assert v["signature_valid"], v
    print("  PASS: test_seal_genesis")


def test_seal_does_not_mutate_input():
    entry = make_entry(0)
    seal_entry(entry, _priv)
    assert entry.seal.entry_hash is None
    assert entry.seal.signature is None
    print("  PASS: test_seal_does_not_mutate_input")


def test_genesis_rules():
    """Only sequence 0 may (and must) lack a previous_hash."""
    try:
        EntrySeal(sequence_number=0, previous_hash="ab" * 32)
        assert False, "Genesis must not link"
    except ValidationError:
        pass
    try:
        EntrySeal(sequence_number=1)
        assert False, "Non-genesis must link"
    except ValidationError:
        pass
    print("  PASS: test_genesis_rules")


def test_payload_rules():
    """Payload must be non-empty and float-free."""
    for payload in ({}, {"amount": 1.5}):
        try:
            JournalEntry(
                entry_type=EntryType.POOL_FUNDED,
                host=_host,
                caller=CALLER,
                timestamp=0,
                payload=payload,
                seal=EntrySeal(sequence_number=0),
            )
            assert False, f"Should reject payload {payload}"
        except (ValidationError, TypeError):
            pass
    print("  PASS: test_payload_rules")


def test_wrong_key_fails():
    other_priv, other_pub = generate_keypair()
    sealed = seal_entry(make_entry(0), _priv)
    v = verify_entry(sealed, other_pub)
    assert v["hash_valid"] and not v["signature_valid"]

    # Signed by a different key than the host it claims
    forged = seal_entry(make_entry(0), other_priv)
    assert not verify_entry(forged)["signature_valid"]
    print("  PASS: test_wrong_key_fails")


# ==================================================================
# 2. Journal verification
# ==================================================================

def test_journal_of_five():
    entries = build_journal(5)
    result = verify_journal(entries, _pub)
    assert result["journal_valid"], result
    assert result["total_entries"] == 5
    for i in range(1, 5):
        assert entries[i].seal.previous_hash == entries[i - 1].seal.entry_hash
    # Order of input does not matter
    assert verify_journal(list(reversed(entries)))["journal_valid"]
    print("  PASS: test_journal_of_five")


def test_tampered_payload_detected():
    entries = build_journal(3)
    entries[1] = entries[1].model_copy(update={"payload": {"review_id": 2, "rating": 5}})
    result = verify_journal(entries, _pub)
    assert not result["journal_valid"]
    assert [item["sequence_number"] for item in result["invalid_entries"]] == [1]
    # Links are checked against stored hashes: one entry, one report
    assert result["broken_links"] == []
    print("  PASS: test_tampered_payload_detected")


def test_removed_entry_detected():
    entries = build_journal(4)
    del entries[2]
    result = verify_journal(entries, _pub)
    assert not result["journal_valid"]
    assert result["sequence_gaps"] == [{"expected_sequence": 2, "actual_sequence": 3}]
    assert result["broken_links"][0]["sequence_number"] == 3
    print("  PASS: test_removed_entry_detected")


def test_timestamp_regression_detected():
    first = seal_entry(make_entry(0, timestamp=10), _priv)
    second = seal_entry(
        make_entry(1, first.seal.entry_hash, timestamp=9), _priv, first.seal.entry_hash
    )
    result = verify_journal([first, second], _pub)
    assert not result["journal_valid"]
    assert result["timestamp_violations"][0]["sequence_number"] == 1
    print("  PASS: test_timestamp_regression_detected")


def test_journal_digest():
    entries = build_journal(3)
    digest = compute_journal_digest(entries)
    assert len(digest) == 64
    assert compute_journal_digest(list(reversed(entries))) == digest
    assert compute_journal_digest(entries[:2]) != digest
    print("  PASS: test_journal_digest")


# ==================================================================
# 3. Journal written by the ledger
# ==================================================================

def _ledger():
    private_key, public_key = generate_keypair()
    identity = StaticIdentity("did:example:owner")
    ledger = Ledger(
        Storage(),
        identity,
        BlockClock(),
        settings=LedgerSettings(_env_file=None),
        host_key=private_key,
    )
    return ledger, identity, public_key


def test_ledger_journal_verifies():
    ledger, identity, public_key = _ledger()
    rid = ledger.register_restaurant("Bistro", "French", "Rue 1")
    ledger.attach_restaurant_media(rid, ["QmPhotoOfTheRoom"], ["image"])
    with identity.act_as(CALLER):
        ledger.submit_review(rid, 4, "Lovely")
        ledger.record_visit(rid)

    journal = ledger.storage.get_journal()
    assert [e.entry_type for e in journal] == [
        EntryType.RESTAURANT_REGISTERED,
        EntryType.RESTAURANT_MEDIA_ATTACHED,
        EntryType.REVIEW_SUBMITTED,
        EntryType.VISIT_RECORDED,
    ]
    assert all(e.host == ledger.host_did for e in journal)
    assert journal[2].caller == CALLER
    assert verify_journal(journal, public_key)["journal_valid"]
    print("  PASS: test_ledger_journal_verifies")


def test_admin_defaults_to_host():
    ledger, identity, _ = _ledger()
    assert ledger.admin == ledger.host_did
    with identity.act_as(ledger.host_did):
        assert ledger.fund_pool(5) == 5
    print("  PASS: test_admin_defaults_to_host")


def test_rejected_operation_leaves_no_entry():
    ledger, identity, _ = _ledger()
    rid = ledger.register_restaurant("Bistro", "French", "Rue 1")
    with identity.act_as(CALLER):
        try:
            ledger.submit_review(rid, 0, "bad")
            assert False, "Should reject rating 0"
        except InvalidRating:
            pass
    assert len(ledger.storage.get_journal()) == 1
    print("  PASS: test_rejected_operation_leaves_no_entry")


def test_export_journal_is_json():
    ledger, identity, _ = _ledger()
    ledger.register_restaurant("Bistro", "French", "Rue 1")
    exported = ledger.export_journal()
    text = json.dumps(exported)
    reloaded = [JournalEntry.model_validate(raw) for raw in json.loads(text)]
    assert verify_journal(reloaded)["journal_valid"]
    assert exported[0]["entry_type"] == "restaurant_registered"
    print("  PASS: test_export_journal_is_json")


def test_host_key_from_file():
    """host_key_path loads a PEM key; the journal is sealed with it."""
    private_key, public_key = generate_keypair()
    with tempfile.TemporaryDirectory() as tmpdir:
        key_path = os.path.join(tmpdir, "host.pem")
        with open(key_path, "wb") as f:
            f.write(private_key_to_pem(private_key))

        settings = LedgerSettings(_env_file=None, host_key_path=key_path)
        ledger = Ledger.from_settings(StaticIdentity(CALLER), BlockClock(), settings)
        assert ledger.host_did == public_key_to_did_key(public_key)
        ledger.register_restaurant("Bistro", "French", "Rue 1")
        assert verify_journal(ledger.storage.get_journal(), public_key)["journal_valid"]
        ledger.storage.close()
    print("  PASS: test_host_key_from_file")


def run_all():
    print("\n--- 1. Seal & Verify ---")
    test_seal_genesis()
    test_seal_does_not_mutate_input()
    test_genesis_rules()
    test_payload_rules()
    test_wrong_key_fails()

    print("\n--- 2. Journal Verification ---")
    test_journal_of_five()
    test_tampered_payload_detected()
    test_removed_entry_detected()
    test_timestamp_regression_detected()
    test_journal_digest()

    print("\n--- 3. Ledger Journal ---")
    test_ledger_journal_verifies()
    test_admin_defaults_to_host()
    test_rejected_operation_leaves_no_entry()
    test_export_journal_is_json()
    test_host_key_from_file()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED")
    print("=" * 60)


if __name__ == "__main__":
    run_all()
