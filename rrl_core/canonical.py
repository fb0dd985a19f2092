"""
rrl_core/canonical.py — Canonical JSON bytes for journal hashing.

The output follows RFC 8785 (JCS) for the subset of JSON the journal
uses: object members ordered by UTF-16 code units, no whitespace,
strings escaped by json.dumps with non-ASCII left as UTF-8.

Numbers differ on purpose from JCS: payload amounts are u128, so
integers are written exactly in decimal at any size, and floats are a
TypeError. Sealing and verification both go through this module, so
the same entry always hashes to the same bytes.
"""

from __future__ import annotations

import json
from typing import Any, List


def canonicalize(obj: Any) -> bytes:
    """Canonical UTF-8 JSON for `obj`.

    Raises:
        TypeError: on floats, non-string keys, or non-JSON types.
    """
    out: List[str] = []
    _write(obj, out)
    return "".join(out).encode("utf-8")


def canonicalize_entry(entry) -> bytes:
    """Bytes that a JournalEntry's hash and signature cover."""
    return canonicalize(entry.hashable_dict())


def _write(value: Any, out: List[str]) -> None:
    # bool before int: True is an int
    if value is None or isinstance(value, bool):
        out.append({None: "null", True: "true", False: "false"}[value])
    elif isinstance(value, int):
        out.append(str(value))
    elif isinstance(value, str):
        out.append(json.dumps(value, ensure_ascii=False))
    elif isinstance(value, dict):
        _write_object(value, out)
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _write(item, out)
        out.append("]")
    elif isinstance(value, float):
        raise TypeError(f"Float {value!r} in journal payload; amounts must be integers")
    else:
        raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def _write_object(obj: dict, out: List[str]) -> None:
    bad = [k for k in obj if not isinstance(k, str)]
    if bad:
        raise TypeError(f"Object keys must be strings, got {bad[0]!r}")

    out.append("{")
    for i, key in enumerate(sorted(obj, key=_utf16_units)):
        if i:
            out.append(",")
        out.append(json.dumps(key, ensure_ascii=False))
        out.append(":")
        _write(obj[key], out)
    out.append("}")


def _utf16_units(key: str) -> bytes:
    # Big-endian UTF-16 bytes compare in code-unit order
    return key.encode("utf-16-be")
