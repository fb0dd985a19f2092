"""
rrl_core/crypto.py — Host key and journal sealing primitives.

Built on the `cryptography` package only:
- SHA-256 digests of canonical journal bytes
- Ed25519 host keys (PKCS8 PEM on disk) and hex signatures
- did:key identifiers, both directions, so any verifier can recover
  the host's public key from the signer field alone
"""

from __future__ import annotations

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

# did:key multibase/multicodec framing for Ed25519 keys
DID_KEY_PREFIX = "did:key:z"
ED25519_CODEC = bytes([0xED, 0x01])
ED25519_KEY_SIZE = 32

B58_DIGITS = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of `data`."""
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Host keys
# ---------------------------------------------------------------------------

def generate_keypair() -> tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    key = Ed25519PrivateKey.generate()
    return key, key.public_key()


def private_key_to_pem(key: Ed25519PrivateKey) -> bytes:
    """PKCS8 PEM, unencrypted. Protect the file, not the bytes."""
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def private_key_from_pem(pem_data: bytes) -> Ed25519PrivateKey:
    """Load a host key. Rejects PEM files holding any other key type."""
    key = serialization.load_pem_private_key(pem_data, password=None)
    if isinstance(key, Ed25519PrivateKey):
        return key
    raise TypeError(f"Host key must be Ed25519, got {type(key).__name__}")


def public_key_to_raw(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def sign_bytes(private_key: Ed25519PrivateKey, data: bytes) -> str:
    """Hex-encoded Ed25519 signature over `data`."""
    return private_key.sign(data).hex()


def verify_signature(
    public_key: Ed25519PublicKey, data: bytes, signature_hex: str
) -> bool:
    """True only for a well-formed signature by `public_key` over `data`."""
    try:
        signature = bytes.fromhex(signature_hex)
        public_key.verify(signature, data)
    except (InvalidSignature, ValueError):
        return False
    return True


# ---------------------------------------------------------------------------
# did:key
# ---------------------------------------------------------------------------

def public_key_to_did_key(key: Ed25519PublicKey) -> str:
    """did:key:z<base58btc(0xED01 ‖ raw public key)>"""
    return DID_KEY_PREFIX + b58encode(ED25519_CODEC + public_key_to_raw(key))


def did_key_to_public_key(did: str) -> Ed25519PublicKey:
    """Inverse of public_key_to_did_key.

    Raises ValueError for anything but an Ed25519 did:key.
    """
    if not did.startswith(DID_KEY_PREFIX):
        raise ValueError(f"Not a base58btc did:key: {did}")
    payload = b58decode(did[len(DID_KEY_PREFIX):])
    codec, raw = payload[:len(ED25519_CODEC)], payload[len(ED25519_CODEC):]
    if codec != ED25519_CODEC:
        raise ValueError(f"did:key does not carry an Ed25519 key: {did}")
    if len(raw) != ED25519_KEY_SIZE:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def b58encode(data: bytes) -> str:
    """Base58 with the Bitcoin alphabet; leading zero bytes become '1'."""
    zeros = len(data) - len(data.lstrip(b"\x00"))
    n = int.from_bytes(data, "big")
    digits = []
    while n:
        n, rem = divmod(n, 58)
        digits.append(B58_DIGITS[rem])
    return B58_DIGITS[0] * zeros + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    zeros = len(text) - len(text.lstrip(B58_DIGITS[0]))
    n = 0
    for char in text:
        digit = B58_DIGITS.find(char)
        if digit < 0:
            raise ValueError(f"Invalid base58 character: {char!r}")
        n = n * 58 + digit
    body = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return b"\x00" * zeros + body
