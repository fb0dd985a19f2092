#!/usr/bin/env python3
"""
RRL Tamper Detection Demo

Demonstrates the journal's core security property: it is tamper-evident.

Flow:
  1. Load a journal exported by demo_ledger.py
  2. Pick the first reward payout
  3. Inflate the paid amount (and the pool balance, to look consistent)
  4. Re-run verification → hash mismatch at exactly that entry
  5. Show that every other entry still verifies

Run:
    python examples/demo_ledger.py     # first, generate the journal
    python examples/demo_tamper.py     # then, run tamper detection
"""

import copy
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rrl_core.canonical import canonicalize
from rrl_core.crypto import sha256_hex
from rrl_core.journal import JournalEntry, verify_journal


# ============================================================
# Load journal
# ============================================================

def load_journal(path: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def recompute_hash(entry_dict: dict) -> str:
    """Recompute an entry hash (same pipeline as journal.seal_entry)."""
    hashable = copy.deepcopy(entry_dict)
    hashable["seal"].pop("entry_hash", None)
    hashable["seal"].pop("signature", None)
    return sha256_hex(canonicalize(hashable))


def show_diff(label: str, original, tampered) -> None:
    print(f"    Field: {label}")
    print(f"    - Original:  {original:,}")
    print(f"    + Tampered:  {tampered:,}")


# ============================================================
# Main Demo
# ============================================================

def main():
    print("=" * 72)
    print("  RRL Tamper Detection Demo")
    print("=" * 72)

    journal_path = os.path.join(
        os.path.dirname(os.path.abspath(__file__)), "output", "journal.json"
    )
    if not os.path.exists(journal_path):
        print("\n  ERROR: No journal found.")
        print("  Run 'python examples/demo_ledger.py' first to generate one.")
        return 1

    journal = load_journal(journal_path)
    print(f"\n  Loaded journal: {len(journal)} entries")

    target_idx = next(
        (i for i, e in enumerate(journal) if e["entry_type"] == "reward_paid"), None
    )
    if target_idx is None:
        print("  No reward payout found to tamper with.")
        return 1

    target = journal[target_idx]
    seq = target["seal"]["sequence_number"]
    print(f"\n  Target entry: sequence #{seq} ({target['entry_type']})")

    # --- Step 1: original ---
    print(f"\n{'━' * 72}")
    print("  STEP 1: Original Entry (verified intact)")
    print(f"{'━' * 72}")
    stored = target["seal"]["entry_hash"]
    computed = recompute_hash(target)
    print(f"\n  Recipient:     {target['payload']['recipient']}")
    print(f"  Amount:        {target['payload']['amount']:,}")
    print(f"  Stored hash:   {stored[:32]}...")
    print(f"  Computed hash: {computed[:32]}...")
    print(f"  Status:        {'✓ MATCH' if stored == computed else '✗ MISMATCH'}")

    # --- Step 2: tamper ---
    print(f"\n{'━' * 72}")
    print("  STEP 2: TAMPERING — Inflating the payout")
    print(f"{'━' * 72}")
    tampered_journal = copy.deepcopy(journal)
    payload = tampered_journal[target_idx]["payload"]
    original_amount = payload["amount"]
    payload["amount"] = original_amount * 10
    payload["pool_balance"] = payload["pool_balance"] - original_amount * 9

    print("\n  Attacker modifies:")
    show_diff("payload.amount", original_amount, payload["amount"])
    print(f"\n  The entry_hash and signature cannot be redone without the host key.")

    # --- Step 3: verify ---
    print(f"\n{'━' * 72}")
    print("  STEP 3: VERIFICATION")
    print(f"{'━' * 72}\n")
    entries = [JournalEntry.model_validate(raw) for raw in tampered_journal]
    result = verify_journal(entries)
    invalid = {item["sequence_number"]: item["errors"] for item in result["invalid_entries"]}

    for entry in entries:
        s = entry.seal.sequence_number
        mark = "✗" if s in invalid else "✓"
        status = "TAMPERED" if s in invalid else "intact"
        print(f"  {mark} seq #{s:2d} [{entry.entry_type.value:26s}] — {status}")

    # --- Verdict ---
    print(f"\n{'━' * 72}")
    print("  VERDICT")
    print(f"{'━' * 72}")
    print(f"\n  Journal status:     {'INTACT' if result['journal_valid'] else 'COMPROMISED'}")
    print(f"  Total entries:      {result['total_entries']}")
    print(f"  Tampered entries:   {sorted(invalid)}")
    for errors in invalid.values():
        for error in errors:
            print(f"    • {error[:66]}")
    print(f"{'━' * 72}\n")
    return 0 if not result["journal_valid"] else 1


if __name__ == "__main__":
    sys.exit(main())
