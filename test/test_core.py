"""
test/test_core.py — RRL core building blocks

Requires: pydantic, pydantic-settings, cryptography, structlog

Run: pytest test/test_core.py -v
  or: python test/test_core.py

Test structure:
  1. Entity models (Pydantic invariants)
  2. Checked arithmetic
  3. Canonical serialization
  4. Crypto primitives (Ed25519 + SHA-256 + did:key)
  5. Errors and settings
"""

import json
import os
import sys

# Add parent to path for direct execution
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from rrl_core import (
    # Models
    Restaurant, Review, MediaItem, MediaType,
    RestaurantAttachment, ReviewAttachment, ReviewerStats,
    export_json_schema,
    # Numeric
    U128_MAX, checked_add, checked_sub, checked_mul, bump,
    # Canonical
    canonicalize,
    # Crypto
    sha256_hex, generate_keypair, sign_bytes, verify_signature,
    private_key_to_pem, private_key_from_pem,
    public_key_to_did_key, did_key_to_public_key,
    # Errors and settings
    ErrorKind, InvalidInput, NotFound, TransferFailure,
    LedgerSettings,
)
from rrl_core.config import SQLITE_MAX_INTEGER


OWNER = "did:example:owner"


def make_restaurant(**overrides) -> Restaurant:
    fields = dict(
        restaurant_id=1,
        name="Trattoria Uno",
        cuisine="Italian",
        location="12 Harbour St",
        owner=OWNER,
    )
    fields.update(overrides)
    return Restaurant(**fields)


# ==================================================================
# 1. Entity models
# ==================================================================

def test_restaurant_defaults():
    """A new restaurant is active with empty aggregates."""
    r = make_restaurant()
    assert r.active is True
    assert r.total_reviews == 0
    assert r.average_rating == 0
    assert r.media_count == 0
    assert r.profile_media_hash is None
    print("  PASS: test_restaurant_defaults")


def test_entities_are_frozen():
    """Stored values cannot be mutated in place; merge() builds a copy."""
    r = make_restaurant()
    try:
        r.active = False
        assert False, "Should reject assignment on a frozen entity"
    except ValidationError:
        pass

    flipped = r.merge(active=False)
    assert flipped.active is False
    assert r.active is True
    assert flipped.restaurant_id == r.restaurant_id
    print("  PASS: test_entities_are_frozen")


def test_review_rating_bounds():
    """Review rating is 1..5."""
    for rating in (0, 6):
        try:
            Review(
                review_id=1, restaurant_id=1, reviewer=OWNER,
                rating=rating, comment="x", timestamp=1,
            )
            assert False, f"Should reject rating {rating}"
        except ValidationError:
            pass
    print("  PASS: test_review_rating_bounds")


def test_principal_pattern():
    """Principals are DID strings."""
    try:
        make_restaurant(owner="alice")
        assert False, "Should reject non-DID owner"
    except ValidationError:
        pass
    print("  PASS: test_principal_pattern")


def test_media_attachment_discriminator():
    """attached_to round-trips through JSON as the right variant."""
    item = MediaItem(
        media_id=1,
        content_hash="QmExampleHash0001",
        media_type=MediaType.IMAGE,
        uploader=OWNER,
        attached_to=ReviewAttachment(review_id=7),
        timestamp=3,
    )
    loaded = MediaItem.model_validate_json(item.model_dump_json())
    assert isinstance(loaded.attached_to, ReviewAttachment)
    assert loaded.review_id == 7
    assert loaded.restaurant_id is None

    raw = json.loads(item.model_dump_json())
    raw["attached_to"] = {"kind": "restaurant", "restaurant_id": 2}
    moved = MediaItem.model_validate(raw)
    assert isinstance(moved.attached_to, RestaurantAttachment)
    assert moved.restaurant_id == 2
    print("  PASS: test_media_attachment_discriminator")


def test_media_attachment_needs_kind():
    """An attachment without a kind tag is neither variant."""
    try:
        MediaItem(
            media_id=1,
            content_hash="QmExampleHash0001",
            media_type="image",
            uploader=OWNER,
            attached_to={"restaurant_id": 1, "review_id": 1},
            timestamp=0,
        )
        assert False, "Should reject untagged attachment"
    except ValidationError:
        pass
    print("  PASS: test_media_attachment_needs_kind")


def test_u128_fields():
    """Counters and balances accept the full u128 range and nothing above."""
    stats = ReviewerStats(principal=OWNER, total_rewards_earned=U128_MAX)
    assert stats.total_rewards_earned == U128_MAX
    try:
        ReviewerStats(principal=OWNER, total_rewards_earned=U128_MAX + 1)
        assert False, "Should reject value above u128"
    except ValidationError:
        pass
    print("  PASS: test_u128_fields")


def test_json_schema_export():
    """JSON Schema covers every stored entity."""
    schemas = json.loads(export_json_schema())
    for name in ("Restaurant", "Review", "ReviewerStats", "LoyaltyRecord", "MediaItem"):
        assert name in schemas, f"Missing schema for {name}"
    assert "average_rating" in schemas["Restaurant"]["properties"]
    print("  PASS: test_json_schema_export")


# ==================================================================
# 2. Checked arithmetic
# ==================================================================

def test_checked_add_overflow():
    assert checked_add(U128_MAX - 1, 1) == U128_MAX
    try:
        checked_add(U128_MAX, 1)
        assert False, "Should detect overflow"
    except InvalidInput:
        pass
    print("  PASS: test_checked_add_overflow")


def test_checked_sub_underflow():
    assert checked_sub(5, 5) == 0
    try:
        checked_sub(1, 2)
        assert False, "Should detect underflow"
    except InvalidInput:
        pass
    print("  PASS: test_checked_sub_underflow")


def test_checked_mul_overflow():
    assert checked_mul(0, U128_MAX) == 0
    assert checked_mul(2**64, 2**63) == 2**127
    try:
        checked_mul(2**64, 2**64)
        assert False, "Should detect overflow"
    except InvalidInput:
        pass
    print("  PASS: test_checked_mul_overflow")


def test_bump_ceiling():
    """bump() increments strictly below the ceiling."""
    assert bump(4, 10) == 5
    assert bump(9, 10) == 10
    try:
        bump(10, 10, "review total")
        assert False, "Should stop at the ceiling"
    except InvalidInput as e:
        assert "review total" in e.message
    print("  PASS: test_bump_ceiling")


def test_operands_must_be_ints():
    for bad in (True, 1.0, "1", -1):
        try:
            checked_add(bad, 1)
            assert False, f"Should reject operand {bad!r}"
        except InvalidInput:
            pass
    print("  PASS: test_operands_must_be_ints")


# ==================================================================
# 3. Canonical serialization
# ==================================================================

def test_canonicalize_primitives():
    assert canonicalize(None) == b"null"
    assert canonicalize(True) == b"true"
    assert canonicalize(0) == b"0"
    assert canonicalize("a\"b") == b'"a\\"b"'
    print("  PASS: test_canonicalize_primitives")


def test_canonicalize_large_integers():
    """u128 amounts are written in full, never rounded."""
    assert canonicalize(U128_MAX) == str(U128_MAX).encode()
    assert canonicalize({"amount": 2**100}) == b'{"amount":1267650600228229401496703205376}'
    print("  PASS: test_canonicalize_large_integers")


def test_canonicalize_key_ordering():
    """Keys sorted by UTF-16 code units, no whitespace."""
    assert canonicalize({"b": 1, "a": [1, 2], "A": None}) == b'{"A":null,"a":[1,2],"b":1}'
    # U+E000 sorts after U+1F600 in UTF-16 (surrogates are 0xD8xx)
    ordered = canonicalize({"\ue000": 1, "\U0001f600": 2}).decode("utf-8")
    assert ordered.index("\U0001f600") < ordered.index("\ue000")
    print("  PASS: test_canonicalize_key_ordering")


def test_canonicalize_errors():
    """Floats and non-JSON values are rejected."""
    for bad in (1.5, {"x": 0.0}, {1: "a"}, {"s": {1, 2}}):
        try:
            canonicalize(bad)
            assert False, f"Should reject {bad!r}"
        except TypeError:
            pass
    print("  PASS: test_canonicalize_errors")


# ==================================================================
# 4. Crypto primitives
# ==================================================================

def test_sign_verify():
    priv, pub = generate_keypair()
    sig = sign_bytes(priv, b"journal entry")
    assert verify_signature(pub, b"journal entry", sig)
    assert not verify_signature(pub, b"journal entrY", sig)
    assert not verify_signature(pub, b"journal entry", "zz")
    print("  PASS: test_sign_verify")


def test_pem_roundtrip():
    priv, pub = generate_keypair()
    loaded = private_key_from_pem(private_key_to_pem(priv))
    sig = sign_bytes(loaded, b"data")
    assert verify_signature(pub, b"data", sig)
    print("  PASS: test_pem_roundtrip")


def test_sha256():
    assert sha256_hex(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    print("  PASS: test_sha256")


def test_did_key_roundtrip():
    """did:key encodes the public key and decodes back to it."""
    priv, pub = generate_keypair()
    did = public_key_to_did_key(pub)
    assert did.startswith("did:key:z6Mk")
    recovered = did_key_to_public_key(did)
    assert verify_signature(recovered, b"x", sign_bytes(priv, b"x"))

    for bad in ("did:example:alice", "did:key:z1111"):
        try:
            did_key_to_public_key(bad)
            assert False, f"Should reject {bad}"
        except ValueError:
            pass
    print("  PASS: test_did_key_roundtrip")


# ==================================================================
# 5. Errors and settings
# ==================================================================

def test_error_tagged_form():
    e = NotFound("Restaurant 9 does not exist")
    assert e.kind is ErrorKind.NOT_FOUND
    assert e.to_dict() == {
        "ok": False,
        "error": "not-found",
        "message": "Restaurant 9 does not exist",
    }
    assert TransferFailure("x").to_dict()["error"] == "transfer-failure"
    print("  PASS: test_error_tagged_form")


def test_settings_defaults():
    s = LedgerSettings(_env_file=None)
    assert s.reviewer_reward_amount == 1_000_000
    assert s.loyalty_reward_amount == 500_000
    assert s.reviewer_reward_min_reviews == 3
    assert s.loyalty_min_visits == 2
    assert s.loyalty_reward_interval == 5
    assert s.counter_ceiling == SQLITE_MAX_INTEGER
    assert s.max_comment_length == 500
    print("  PASS: test_settings_defaults")


def test_settings_from_environment():
    """RRL_-prefixed variables override defaults."""
    os.environ["RRL_REVIEWER_REWARD_AMOUNT"] = "42"
    os.environ["RRL_LOG_FORMAT"] = "json"
    try:
        s = LedgerSettings(_env_file=None)
        assert s.reviewer_reward_amount == 42
        assert s.log_format == "json"
    finally:
        del os.environ["RRL_REVIEWER_REWARD_AMOUNT"]
        del os.environ["RRL_LOG_FORMAT"]
    print("  PASS: test_settings_from_environment")


def test_settings_rejects_bad_values():
    for bad in (
        {"counter_ceiling": SQLITE_MAX_INTEGER + 1},
        {"reviewer_reward_amount": 0},
        {"log_format": "xml"},
    ):
        try:
            LedgerSettings(_env_file=None, **bad)
            assert False, f"Should reject {bad}"
        except ValidationError:
            pass
    print("  PASS: test_settings_rejects_bad_values")


def run_all():
    print("\n--- 1. Entity Models ---")
    test_restaurant_defaults()
    test_entities_are_frozen()
    test_review_rating_bounds()
    test_principal_pattern()
    test_media_attachment_discriminator()
    test_media_attachment_needs_kind()
    test_u128_fields()
    test_json_schema_export()

    print("\n--- 2. Checked Arithmetic ---")
    test_checked_add_overflow()
    test_checked_sub_underflow()
    test_checked_mul_overflow()
    test_bump_ceiling()
    test_operands_must_be_ints()

    print("\n--- 3. Canonical Serialization ---")
    test_canonicalize_primitives()
    test_canonicalize_large_integers()
    test_canonicalize_key_ordering()
    test_canonicalize_errors()

    print("\n--- 4. Crypto Primitives ---")
    test_sign_verify()
    test_pem_roundtrip()
    test_sha256()
    test_did_key_roundtrip()

    print("\n--- 5. Errors and Settings ---")
    test_error_tagged_form()
    test_settings_defaults()
    test_settings_from_environment()
    test_settings_rejects_bad_values()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED")
    print("=" * 60)


if __name__ == "__main__":
    run_all()
