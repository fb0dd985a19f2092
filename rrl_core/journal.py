"""
rrl_core/journal.py — Signed, hash-chained operation journal.

Every committed state change appends one JournalEntry:

Seal:   Set previous_hash → canonicalize → SHA-256 → Ed25519 sign
Verify: Walk journal, recompute hashes, check signatures and links

Entries are written inside the operation's own transaction, so a
rolled-back operation never leaves an entry behind. The journal is
append-only and has a single writer: the ledger host key.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import BaseModel, Field, field_validator, model_validator

from .canonical import canonicalize
from .crypto import did_key_to_public_key, sha256_hex, sign_bytes, verify_signature


class EntryType(str, Enum):
    """Kinds of committed operations recorded in the journal."""
    RESTAURANT_REGISTERED = "restaurant_registered"
    RESTAURANT_STATUS_CHANGED = "restaurant_status_changed"
    PROFILE_MEDIA_UPDATED = "profile_media_updated"
    RESTAURANT_MEDIA_ATTACHED = "restaurant_media_attached"
    MEDIA_DEACTIVATED = "media_deactivated"
    REVIEW_SUBMITTED = "review_submitted"
    VISIT_RECORDED = "visit_recorded"
    POOL_FUNDED = "pool_funded"
    REWARD_PAID = "reward_paid"
    REWARD_SKIPPED = "reward_skipped"


class Signature(BaseModel):
    """Signature over the entry's canonical bytes, self-describing."""

    algorithm: str = Field(default="Ed25519")
    signer: str = Field(..., pattern=r"^did:")
    value: str = Field(..., pattern=r"^[0-9a-f]+$")


class EntrySeal(BaseModel):
    """Chain linkage and cryptographic seal. Populated by seal_entry()."""

    sequence_number: int = Field(..., ge=0)
    previous_hash: Optional[str] = None
    entry_hash: Optional[str] = None
    signature: Optional[Signature] = None

    @model_validator(mode="after")
    def validate_genesis(self) -> "EntrySeal":
        if self.sequence_number == 0 and self.previous_hash is not None:
            raise ValueError(
                "Genesis entry (sequence_number=0) must not have a previous_hash"
            )
        if self.sequence_number > 0 and self.previous_hash is None:
            raise ValueError("Non-genesis entry must have a previous_hash")
        return self


class JournalEntry(BaseModel):
    """One committed operation.

    - entry_type: what happened
    - host:       did:key of the ledger host that sealed the entry
    - caller:     principal that invoked the operation
    - timestamp:  block timestamp from the clock provider
    - payload:    operation-specific ids and amounts (JSON-safe, no floats)
    - seal:       hash chain linkage and signature
    """

    entry_type: EntryType
    host: str = Field(..., pattern=r"^did:")
    caller: str = Field(..., pattern=r"^did:")
    timestamp: int = Field(..., ge=0)
    payload: Dict[str, Any]
    seal: EntrySeal

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("payload must contain at least one field")
        # Raises TypeError on floats and non-JSON values
        canonicalize(v)
        return v

    def hashable_dict(self) -> dict:
        """The entry as a dict without the derived seal fields."""
        d = self.model_dump(mode="json")
        d["seal"].pop("entry_hash", None)
        d["seal"].pop("signature", None)
        return d


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal_entry(
    entry: JournalEntry,
    private_key: Ed25519PrivateKey,
    previous_hash: Optional[str] = None,
) -> JournalEntry:
    """Seal an entry: set previous_hash, compute entry_hash, sign.

    entry.seal.sequence_number must already be set by the caller.
    Returns a new JournalEntry; the input is not mutated.
    """
    seq = entry.seal.sequence_number
    linked = entry.model_copy(
        update={"seal": EntrySeal(sequence_number=seq, previous_hash=previous_hash)}
    )

    canonical_bytes = canonicalize(linked.hashable_dict())
    signature = Signature(
        signer=entry.host,
        value=sign_bytes(private_key, canonical_bytes),
    )

    return linked.model_copy(
        update={
            "seal": EntrySeal(
                sequence_number=seq,
                previous_hash=previous_hash,
                entry_hash=sha256_hex(canonical_bytes),
                signature=signature,
            )
        }
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_entry(
    entry: JournalEntry,
    public_key: Optional[Ed25519PublicKey] = None,
) -> dict:
    """Verify one entry's hash, signature and signer.

    When public_key is None it is recovered from entry.host (did:key).
    """
    result = {
        "sequence_number": entry.seal.sequence_number,
        "hash_valid": False,
        "signature_valid": False,
        "signer_match": False,
        "errors": [],
    }

    canonical_bytes = canonicalize(entry.hashable_dict())
    expected_hash = sha256_hex(canonical_bytes)
    if expected_hash == entry.seal.entry_hash:
        result["hash_valid"] = True
    else:
        result["errors"].append(
            f"Hash mismatch: computed {expected_hash}, stored {entry.seal.entry_hash}"
        )

    if public_key is None:
        try:
            public_key = did_key_to_public_key(entry.host)
        except ValueError as e:
            result["errors"].append(f"Cannot resolve host key: {e}")
            return result

    sig = entry.seal.signature
    if sig and sig.value:
        if verify_signature(public_key, canonical_bytes, sig.value):
            result["signature_valid"] = True
        else:
            result["errors"].append("Signature verification failed")
    else:
        result["errors"].append("No signature present")

    if sig and sig.signer == entry.host:
        result["signer_match"] = True
    elif sig:
        result["errors"].append(
            f"Signer mismatch: signature says {sig.signer}, entry says {entry.host}"
        )

    return result


def verify_journal(
    entries: List[JournalEntry],
    public_key: Optional[Ed25519PublicKey] = None,
) -> dict:
    """Verify a whole journal.

    For each entry in sequence order: hash and signature, previous_hash
    link, timestamp monotonicity, sequence continuity from 0.
    """
    result: Dict[str, Any] = {
        "journal_valid": True,
        "total_entries": len(entries),
        "broken_links": [],
        "invalid_entries": [],
        "timestamp_violations": [],
        "sequence_gaps": [],
    }

    prev_hash: Optional[str] = None
    prev_timestamp: Optional[int] = None
    expected_seq = 0

    for entry in sorted(entries, key=lambda e: e.seal.sequence_number):
        seq = entry.seal.sequence_number

        v = verify_entry(entry, public_key)
        if not (v["hash_valid"] and v["signature_valid"] and v["signer_match"]):
            result["journal_valid"] = False
            result["invalid_entries"].append(
                {"sequence_number": seq, "errors": v["errors"]}
            )

        if entry.seal.previous_hash != prev_hash:
            result["journal_valid"] = False
            result["broken_links"].append({
                "sequence_number": seq,
                "expected_previous_hash": prev_hash,
                "actual_previous_hash": entry.seal.previous_hash,
            })

        if prev_timestamp is not None and entry.timestamp < prev_timestamp:
            result["journal_valid"] = False
            result["timestamp_violations"].append({
                "sequence_number": seq,
                "timestamp": entry.timestamp,
                "previous_timestamp": prev_timestamp,
            })

        if seq != expected_seq:
            result["journal_valid"] = False
            result["sequence_gaps"].append(
                {"expected_sequence": expected_seq, "actual_sequence": seq}
            )

        # Link against the STORED hash so one tampered entry is reported
        # once, as invalid, rather than also breaking every later link.
        prev_hash = entry.seal.entry_hash
        prev_timestamp = entry.timestamp
        expected_seq = seq + 1

    return result


def compute_journal_digest(entries: List[JournalEntry]) -> str:
    """SHA-256 over the concatenated entry hashes in sequence order."""
    ordered = sorted(entries, key=lambda e: e.seal.sequence_number)
    combined = "".join(e.seal.entry_hash for e in ordered if e.seal.entry_hash)
    return sha256_hex(combined.encode("utf-8"))
