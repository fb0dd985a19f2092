#!/usr/bin/env python3
"""
RRL CLI — Human-readable journal viewer and ledger auditor.

Usage:
    python -m tools.rrl_cli view <journal.json> [--compact]
    python -m tools.rrl_cli verify <journal.json>
    python -m tools.rrl_cli audit <ledger.db>
    python -m tools.rrl_cli keygen <host_key.pem>
    python -m tools.rrl_cli schema

Commands:
    view    — Render an exported journal as readable output
    verify  — Recompute hashes, signatures and links of an exported journal
    audit   — Verify the journal and reconcile state inside a ledger database
    keygen  — Write a new Ed25519 host key (PEM) and print its did:key
    schema  — Print the JSON Schema of every stored entity
"""

import argparse
import json
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from rrl_auditor import Auditor
from rrl_core.crypto import generate_keypair, private_key_to_pem, public_key_to_did_key
from rrl_core.journal import JournalEntry, verify_journal
from rrl_core.models import export_json_schema
from rrl_core.storage import Storage


# ============================================================
# Labels
# ============================================================

LABELS = {
    "restaurant_registered": "RESTAURANT",
    "restaurant_status_changed": "STATUS",
    "profile_media_updated": "PROFILE",
    "restaurant_media_attached": "GALLERY",
    "media_deactivated": "MEDIA OFF",
    "review_submitted": "REVIEW",
    "visit_recorded": "VISIT",
    "pool_funded": "POOL +",
    "reward_paid": "REWARD",
    "reward_skipped": "NO REWARD",
}


def fmt_hash(h, length: int = 16) -> str:
    """Abbreviate a hash for display."""
    if h is None:
        return "(genesis)"
    return f"{h[:length]}..."


def fmt_principal(did: str, length: int = 24) -> str:
    return did if len(did) <= length else f"{did[:length]}..."


# ============================================================
# View command
# ============================================================

def cmd_view(journal: list, compact: bool = False) -> int:
    """Render the journal in human-readable format."""
    if not journal:
        print("  (empty journal)")
        return 0

    print(f"━━━ Journal: {len(journal)} entries ━━━")
    print(f"Host: {journal[0]['host']}")

    for entry in journal:
        seq = entry["seal"]["sequence_number"]
        kind = entry["entry_type"]
        label = LABELS.get(kind, kind.upper())
        print(f"\n[{seq}] {label} | block {entry['timestamp']} | {fmt_principal(entry['caller'])}")

        if compact:
            continue
        parts = []
        for key, value in entry["payload"].items():
            if isinstance(value, str) and len(value) > 30:
                parts.append(f"{key}: \"{value[:27]}...\"")
            else:
                parts.append(f"{key}: {json.dumps(value)}")
        print(f"    ─── {{{', '.join(parts)}}} ───")
        print(f"    hash {fmt_hash(entry['seal']['entry_hash'])}")
    return 0


# ============================================================
# Verify command
# ============================================================

def cmd_verify(journal: list) -> int:
    """Verify journal integrity from an exported JSON file."""
    if not journal:
        print("  (empty journal)")
        return 0

    try:
        entries = [JournalEntry.model_validate(raw) for raw in journal]
    except ValidationError as e:
        print(f"  Result: ✗ MALFORMED JOURNAL ({e.error_count()} error(s))")
        return 1

    result = verify_journal(entries)
    bad = {item["sequence_number"] for item in result["invalid_entries"]}
    bad |= {item["sequence_number"] for item in result["broken_links"]}

    print("━━━ Journal Verification ━━━")
    print(f"Entries: {result['total_entries']}")
    for entry in entries:
        seq = entry.seal.sequence_number
        if seq in bad:
            print(f"  ✗ seq #{seq:3d} [{entry.entry_type.value:26s}] FAILED")
        else:
            print(f"  ✓ seq #{seq:3d} [{entry.entry_type.value:26s}] hash OK, signature OK, link OK")

    print()
    if result["journal_valid"]:
        print(f"  Result: ✓ JOURNAL INTACT ({len(entries)} entries verified)")
        return 0

    print("  Result: ✗ JOURNAL COMPROMISED")
    for item in result["invalid_entries"]:
        for error in item["errors"]:
            print(f"    • seq #{item['sequence_number']}: {error}")
    for item in result["broken_links"]:
        print(
            f"    • seq #{item['sequence_number']}: link broken "
            f"(expected prev {fmt_hash(item['expected_previous_hash'])}, "
            f"actual {fmt_hash(item['actual_previous_hash'])})"
        )
    for item in result["sequence_gaps"]:
        print(f"    • expected seq #{item['expected_sequence']}, got #{item['actual_sequence']}")
    for item in result["timestamp_violations"]:
        print(f"    • seq #{item['sequence_number']}: timestamp went backwards")
    return 1


# ============================================================
# Audit / keygen / schema
# ============================================================

def cmd_audit(db_path: str) -> int:
    storage = Storage(db_path)
    try:
        report = Auditor(storage).audit()
    finally:
        storage.close()

    journal = report["journal"]
    print("━━━ Ledger Audit ━━━")
    print(f"Journal entries: {journal['total_entries']} "
          f"({'intact' if journal['journal_valid'] else 'COMPROMISED'})")
    violations = report["state"]["violations"]
    if not violations:
        print("State: consistent")
    for violation in violations:
        print(f"  ✗ [{violation['check']}] {violation['detail']}")
    return 0 if report["passed"] else 1


def cmd_keygen(path: str) -> int:
    if os.path.exists(path):
        print(f"  ERROR: Refusing to overwrite existing file: {path}")
        return 1
    private_key, public_key = generate_keypair()
    with open(path, "wb") as f:
        f.write(private_key_to_pem(private_key))
    print(public_key_to_did_key(public_key))
    return 0


def cmd_schema() -> int:
    print(export_json_schema())
    return 0


# ============================================================
# Main
# ============================================================

def _load_journal(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="RRL CLI — Ledger journal viewer, verifier and auditor",
        prog="python -m tools.rrl_cli",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    view = sub.add_parser("view", help="Render an exported journal")
    view.add_argument("journal_file", help="Path to journal.json")
    view.add_argument("--compact", "-c", action="store_true", help="Hide payloads")

    verify = sub.add_parser("verify", help="Check an exported journal's integrity")
    verify.add_argument("journal_file", help="Path to journal.json")

    audit = sub.add_parser("audit", help="Verify and reconcile a ledger database")
    audit.add_argument("db_file", help="Path to the ledger SQLite database")

    keygen = sub.add_parser("keygen", help="Generate a host key")
    keygen.add_argument("key_file", help="Where to write the PEM private key")

    sub.add_parser("schema", help="Print entity JSON Schemas")

    args = parser.parse_args(argv)

    for attr in ("journal_file", "db_file"):
        path = getattr(args, attr, None)
        if path is not None and not os.path.exists(path):
            print(f"  ERROR: File not found: {path}")
            return 1

    if args.command == "view":
        return cmd_view(_load_journal(args.journal_file), compact=args.compact)
    if args.command == "verify":
        return cmd_verify(_load_journal(args.journal_file))
    if args.command == "audit":
        return cmd_audit(args.db_file)
    if args.command == "keygen":
        return cmd_keygen(args.key_file)
    return cmd_schema()


if __name__ == "__main__":
    sys.exit(main())
