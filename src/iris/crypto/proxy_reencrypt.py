# src/iris/crypto/proxy_reencrypt.py
from __future__ import annotations

"""Threshold proxy re-encryption for staged datasets.

Scheme (Umbral, via umbral-pre):

  encrypt():
    - a fresh data key pair (sk_d, pk_d) is generated per dataset
    - the payload is encrypted under pk_d            -> data capsule + ciphertext
    - sk_d itself is encrypted under pk_d            -> sk capsule + sk ciphertext
    - sk_d is split into `shares` key fragments re-encrypting towards the
      delegate's key, any `threshold` of which suffice; each key fragment is
      applied to the sk capsule, giving one capsule fragment per share
    - sk_d is dropped; only the capsule fragments can recover it

  delegate():          seal one capsule fragment to one delegatee (box.py)
  decrypt_fragment():  open the box and parse the fragment
  recombine():         bind fragments to the capsule, recover sk_d, decrypt

Only key-sized material is re-encrypted; payload size never matters.

Verification boundary: decrypt_fragment() establishes that the bytes were sealed
to this delegatee and untouched in transit, and that they parse as a capsule
fragment. It does NOT establish capsule binding. recombine() checks every
fragment against the capsule and the public keys recorded in it before any of
them is used.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import umbral_pre

from iris.crypto.box import BoxOpenError, open_sealed, seal
from iris.runtime.errors import (
    CryptoError,
    DecryptionError,
    FragmentDecryptionError,
    FragmentVerificationError,
    InsufficientFragmentsError,
)

Json = Dict[str, Any]


def _hex(b: bytes) -> str:
    return bytes(b).hex()


def _unhex(obj: Json, key: str) -> bytes:
    v = obj.get(key)
    if not isinstance(v, str):
        raise ValueError(f"missing_{key}")
    return bytes.fromhex(v)


@dataclass(frozen=True)
class PreKeyPair:
    """Umbral key pair as raw bytes (big-endian secret scalar, compressed point)."""

    secret: bytes
    public: bytes

    @staticmethod
    def generate() -> "PreKeyPair":
        sk = umbral_pre.SecretKey.random()
        return PreKeyPair(secret=bytes(sk.to_be_bytes()), public=bytes(sk.public_key().to_compressed_bytes()))

    @staticmethod
    def from_secret(secret: bytes) -> "PreKeyPair":
        sk = _secret_key(secret)
        return PreKeyPair(secret=bytes(secret), public=bytes(sk.public_key().to_compressed_bytes()))


@dataclass(frozen=True)
class SecretStuff:
    data_capsule: bytes
    sk_capsule: bytes
    sk_ciphertext: bytes


@dataclass(frozen=True)
class Capsule:
    """Public re-encryption context for one encryption event.

    Stored on the ledger keyed by `public_key`; referenced, never copied, by
    every fragment operation against the dataset.
    """

    secret: SecretStuff
    public_key: bytes
    verifying_key: bytes
    receiving_key: bytes
    threshold: int
    shares: int

    def to_ledger_obj(self) -> Json:
        return {
            "data_capsule": _hex(self.secret.data_capsule),
            "sk_capsule": _hex(self.secret.sk_capsule),
            "sk_ciphertext": _hex(self.secret.sk_ciphertext),
            "public_key": _hex(self.public_key),
            "verifying_key": _hex(self.verifying_key),
            "receiving_key": _hex(self.receiving_key),
            "threshold": int(self.threshold),
            "shares": int(self.shares),
        }

    @staticmethod
    def from_ledger_obj(obj: Any) -> "Capsule":
        if not isinstance(obj, dict):
            raise ValueError("bad_capsule")
        threshold = int(obj.get("threshold", 0))
        shares = int(obj.get("shares", 0))
        if threshold < 1 or shares < threshold:
            raise ValueError("bad_capsule_threshold")
        return Capsule(
            secret=SecretStuff(
                data_capsule=_unhex(obj, "data_capsule"),
                sk_capsule=_unhex(obj, "sk_capsule"),
                sk_ciphertext=_unhex(obj, "sk_ciphertext"),
            ),
            public_key=_unhex(obj, "public_key"),
            verifying_key=_unhex(obj, "verifying_key"),
            receiving_key=_unhex(obj, "receiving_key"),
            threshold=threshold,
            shares=shares,
        )


@dataclass(frozen=True)
class SecretKeyArtifacts:
    """Owner-side material: the capsule plus one undelegated fragment per share."""

    capsule: Capsule
    fragments: Tuple[bytes, ...]


@dataclass(frozen=True)
class EncryptionResult:
    capsule: Capsule
    ciphertext: bytes
    public_key: bytes
    artifacts: SecretKeyArtifacts


@dataclass(frozen=True)
class EncryptedFragment:
    public_key: bytes  # ephemeral x25519 public key
    nonce: bytes
    ciphertext: bytes

    def to_ledger_obj(self) -> Json:
        return {"public_key": _hex(self.public_key), "nonce": _hex(self.nonce), "ciphertext": _hex(self.ciphertext)}

    @staticmethod
    def from_ledger_obj(obj: Any) -> "EncryptedFragment":
        if not isinstance(obj, dict):
            raise ValueError("bad_encrypted_fragment")
        return EncryptedFragment(
            public_key=_unhex(obj, "public_key"),
            nonce=_unhex(obj, "nonce"),
            ciphertext=_unhex(obj, "ciphertext"),
        )


@dataclass(frozen=True)
class VerifiedFragment:
    """A fragment that opened under the delegatee's key and parsed cleanly.

    Capsule binding is still unchecked; see recombine().
    """

    raw: bytes


def _secret_key(secret: bytes) -> Any:
    try:
        return umbral_pre.SecretKey.from_be_bytes(bytes(secret))
    except Exception as e:
        raise CryptoError("invalid_input", "bad_secret_key") from e


def _public_key(public: bytes, what: str) -> Any:
    try:
        return umbral_pre.PublicKey.from_compressed_bytes(bytes(public))
    except Exception as e:
        raise CryptoError("invalid_input", f"bad_{what}") from e


def _umbral_capsule(raw: bytes, what: str) -> Any:
    try:
        return umbral_pre.Capsule.from_bytes(bytes(raw))
    except Exception as e:
        raise CryptoError("invalid_input", f"bad_{what}") from e


def encrypt(plaintext: bytes, shares: int, threshold: int, delegate_public_key: bytes) -> EncryptionResult:
    """Encrypt `plaintext` and split its data key into `shares` fragments (`threshold` to recover)."""
    shares = int(shares)
    threshold = int(threshold)
    if threshold < 1 or shares < threshold:
        raise CryptoError("invalid_input", "bad_threshold", {"shares": shares, "threshold": threshold})

    receiving_pk = _public_key(delegate_public_key, "delegate_public_key")

    data_sk = umbral_pre.SecretKey.random()
    data_pk = data_sk.public_key()

    data_capsule, ciphertext = umbral_pre.encrypt(data_pk, bytes(plaintext))
    sk_capsule, sk_ciphertext = umbral_pre.encrypt(data_pk, bytes(data_sk.to_be_bytes()))

    signer = umbral_pre.Signer(umbral_pre.SecretKey.random())
    kfrags = umbral_pre.generate_kfrags(data_sk, receiving_pk, signer, threshold, shares, True, True)
    cfrags = tuple(bytes(umbral_pre.reencrypt(sk_capsule, kfrag)) for kfrag in kfrags)

    public_key = bytes(data_pk.to_compressed_bytes())
    capsule = Capsule(
        secret=SecretStuff(
            data_capsule=bytes(data_capsule),
            sk_capsule=bytes(sk_capsule),
            sk_ciphertext=bytes(sk_ciphertext),
        ),
        public_key=public_key,
        verifying_key=bytes(signer.verifying_key().to_compressed_bytes()),
        receiving_key=bytes(delegate_public_key),
        threshold=threshold,
        shares=shares,
    )
    return EncryptionResult(
        capsule=capsule,
        ciphertext=bytes(ciphertext),
        public_key=public_key,
        artifacts=SecretKeyArtifacts(capsule=capsule, fragments=cfrags),
    )


def delegate(artifacts: SecretKeyArtifacts, delegatee_public_key: bytes, index: int) -> EncryptedFragment:
    """Seal fragment `index` to one delegatee's X25519 public key."""
    if index < 0 or index >= len(artifacts.fragments):
        raise CryptoError("invalid_input", "fragment_index_out_of_range", {"index": index})
    try:
        eph_pub, nonce, ct = seal(artifacts.fragments[index], bytes(delegatee_public_key))
    except ValueError as e:
        raise CryptoError("invalid_input", "bad_delegatee_public_key") from e
    return EncryptedFragment(public_key=eph_pub, nonce=nonce, ciphertext=ct)


def delegate_all(artifacts: SecretKeyArtifacts, delegatee_public_keys: Sequence[bytes]) -> List[EncryptedFragment]:
    """One fragment per delegatee, in order."""
    if len(delegatee_public_keys) > len(artifacts.fragments):
        raise CryptoError(
            "invalid_input",
            "more_delegatees_than_shares",
            {"delegatees": len(delegatee_public_keys), "shares": len(artifacts.fragments)},
        )
    return [delegate(artifacts, pk, i) for i, pk in enumerate(delegatee_public_keys)]


def decrypt_fragment(fragment: EncryptedFragment, delegatee_secret_key: bytes) -> VerifiedFragment:
    try:
        raw = open_sealed(
            ephemeral_public=fragment.public_key,
            nonce=fragment.nonce,
            ciphertext=fragment.ciphertext,
            recipient_secret=bytes(delegatee_secret_key),
        )
    except BoxOpenError as e:
        raise FragmentDecryptionError("crypto", "fragment_box_open_failed", {"why": str(e)}) from e

    try:
        umbral_pre.CapsuleFrag.from_bytes(raw)
    except Exception as e:
        raise FragmentDecryptionError("crypto", "fragment_unparsable") from e
    return VerifiedFragment(raw=raw)


def _distinct(fragments: Iterable[VerifiedFragment]) -> List[VerifiedFragment]:
    seen: set[bytes] = set()
    out: List[VerifiedFragment] = []
    for f in fragments:
        if f.raw in seen:
            continue
        seen.add(f.raw)
        out.append(f)
    return out


def recombine(
    capsule: Capsule,
    verified_fragments: Sequence[VerifiedFragment],
    ciphertext: bytes,
    receiving_secret_key: bytes,
) -> bytes:
    """Recover the plaintext from at least `capsule.threshold` distinct fragments."""
    frags = _distinct(verified_fragments)
    if len(frags) < int(capsule.threshold):
        raise InsufficientFragmentsError(
            "crypto",
            "insufficient_fragments",
            {"have": len(frags), "threshold": int(capsule.threshold)},
        )

    sk_capsule = _umbral_capsule(capsule.secret.sk_capsule, "sk_capsule")
    data_capsule = _umbral_capsule(capsule.secret.data_capsule, "data_capsule")
    delegating_pk = _public_key(capsule.public_key, "public_key")
    verifying_pk = _public_key(capsule.verifying_key, "verifying_key")
    receiving_pk = _public_key(capsule.receiving_key, "receiving_key")
    receiving_sk = _secret_key(receiving_secret_key)

    bound = []
    for i, f in enumerate(frags):
        try:
            cfrag = umbral_pre.CapsuleFrag.from_bytes(f.raw)
            bound.append(cfrag.verify(sk_capsule, verifying_pk, delegating_pk, receiving_pk))
        except Exception as e:
            raise FragmentVerificationError("crypto", "fragment_not_bound_to_capsule", {"index": i}) from e

    try:
        sk_bytes = umbral_pre.decrypt_reencrypted(
            receiving_sk, delegating_pk, sk_capsule, bound, capsule.secret.sk_ciphertext
        )
    except Exception as e:
        raise DecryptionError("crypto", "secret_key_recovery_failed") from e

    data_sk = _secret_key(bytes(sk_bytes))
    try:
        return bytes(umbral_pre.decrypt_original(data_sk, data_capsule, bytes(ciphertext)))
    except Exception as e:
        raise DecryptionError("crypto", "payload_decryption_failed") from e
