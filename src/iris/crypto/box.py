# src/iris/crypto/box.py
"""Ephemeral-key authenticated encryption ("sealed box") for key fragments.

seal() generates a one-shot X25519 key pair, agrees a shared secret with the
recipient's public key, derives a ChaCha20-Poly1305 key with HKDF-SHA256 and
encrypts under a random 96-bit nonce. The ephemeral private key never leaves
seal(); the recipient needs only its own secret key plus the ephemeral public
key and nonce carried alongside the ciphertext.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

NONCE_LEN = 12
KEY_LEN = 32

_INFO = b"iris/fragment-box/v1"


class BoxOpenError(ValueError):
    pass


@dataclass(frozen=True)
class BoxKeyPair:
    secret: bytes
    public: bytes

    @staticmethod
    def generate() -> "BoxKeyPair":
        sk = X25519PrivateKey.generate()
        return BoxKeyPair(secret=_raw_secret(sk), public=_raw_public(sk.public_key()))

    @staticmethod
    def from_secret(secret: bytes) -> "BoxKeyPair":
        if len(secret) != KEY_LEN:
            raise ValueError("x25519 secret must be 32 bytes")
        sk = X25519PrivateKey.from_private_bytes(secret)
        return BoxKeyPair(secret=bytes(secret), public=_raw_public(sk.public_key()))


def _raw_secret(sk: X25519PrivateKey) -> bytes:
    return sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())


def _raw_public(pk: X25519PublicKey) -> bytes:
    return pk.public_bytes(Encoding.Raw, PublicFormat.Raw)


def _derive_key(shared: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LEN,
        salt=None,
        info=_INFO + ephemeral_public + recipient_public,
    ).derive(shared)


def seal(plaintext: bytes, recipient_public: bytes) -> Tuple[bytes, bytes, bytes]:
    """Encrypt for `recipient_public`. Returns (ephemeral_public, nonce, ciphertext)."""
    if len(recipient_public) != KEY_LEN:
        raise ValueError("x25519 public key must be 32 bytes")
    eph = X25519PrivateKey.generate()
    eph_pub = _raw_public(eph.public_key())
    shared = eph.exchange(X25519PublicKey.from_public_bytes(recipient_public))
    key = _derive_key(shared, eph_pub, recipient_public)
    nonce = os.urandom(NONCE_LEN)
    ct = ChaCha20Poly1305(key).encrypt(nonce, plaintext, eph_pub)
    return eph_pub, nonce, ct


def open_sealed(*, ephemeral_public: bytes, nonce: bytes, ciphertext: bytes, recipient_secret: bytes) -> bytes:
    """Inverse of seal(). Raises BoxOpenError on any malformed input or tag mismatch."""
    if len(ephemeral_public) != KEY_LEN or len(nonce) != NONCE_LEN or len(recipient_secret) != KEY_LEN:
        raise BoxOpenError("bad_box_parameters")
    try:
        sk = X25519PrivateKey.from_private_bytes(recipient_secret)
        shared = sk.exchange(X25519PublicKey.from_public_bytes(ephemeral_public))
    except ValueError as e:
        raise BoxOpenError("bad_box_key") from e
    key = _derive_key(shared, ephemeral_public, _raw_public(sk.public_key()))
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, ciphertext, ephemeral_public)
    except InvalidTag as e:
        raise BoxOpenError("tag_mismatch") from e
