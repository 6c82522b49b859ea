# src/iris/crypto/sig.py
from __future__ import annotations

"""Ed25519 signatures for gateway reports.

Keys and signatures travel as strings: hex, or base64/base64url when they come
from other tooling. A report is signed over canonical_report_message(), a
compact sorted-key JSON encoding, so every node and the ledger derive the same
bytes from the same (kind, reporter, nonce, payload).
"""

import base64
import binascii
import json
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

Json = Dict[str, Any]

SEED_LEN = 32
EXPANDED_KEY_LEN = 64
SIG_LEN = 64


def decode_bytes(s: str) -> bytes:
    """Decode a hex or base64/base64url string."""
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    padded = s + "=" * (-len(s) % 4)
    try:
        return base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)
    except binascii.Error as e:
        raise ValueError("not hex or base64") from e


def canonical_report_message(*, kind: str, reporter: str, nonce: int, payload: Json) -> bytes:
    obj: Json = {
        "kind": str(kind),
        "reporter": str(reporter),
        "nonce": int(nonce),
        "payload": payload if isinstance(payload, dict) else {},
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def load_signing_key(privkey: str) -> Ed25519PrivateKey:
    """Accept a 32-byte seed, or a 64-byte seed||public key as libsodium stores it."""
    raw = decode_bytes(privkey)
    if len(raw) == EXPANDED_KEY_LEN:
        raw = raw[:SEED_LEN]
    if len(raw) != SEED_LEN:
        raise ValueError("ed25519 signing key must be a 32-byte seed or 64-byte expanded key")
    return Ed25519PrivateKey.from_private_bytes(raw)


def ed25519_pubkey_hex(privkey: str) -> str:
    return load_signing_key(privkey).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


def sign_ed25519(*, message: bytes, privkey: str, encoding: str = "hex") -> str:
    """Sign `message`; the signature is returned as hex (default) or standard base64 ("b64")."""
    sig = load_signing_key(privkey).sign(message)
    if encoding == "hex":
        return sig.hex()
    if encoding in {"b64", "base64"}:
        return base64.b64encode(sig).decode("ascii")
    raise ValueError(f"unsupported signature encoding: {encoding}")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    """False for any malformed key or signature as well as a signature mismatch."""
    try:
        sig_b = decode_bytes(sig)
        if len(sig_b) != SIG_LEN:
            return False
        Ed25519PublicKey.from_public_bytes(decode_bytes(pubkey)).verify(sig_b, message)
    except (InvalidSignature, ValueError):
        return False
    return True
