# src/iris/crypto/keys.py
from __future__ import annotations

from dataclasses import dataclass

from iris.crypto.box import BoxKeyPair
from iris.crypto.proxy_reencrypt import PreKeyPair
from iris.crypto.sig import decode_bytes, ed25519_pubkey_hex


@dataclass(frozen=True)
class NodeKeys:
    """Everything a gateway node signs or decrypts with.

    signing_key: Ed25519 seed (hex) for reports
    box:         X25519 pair that fragments are sealed to
    pre:         Umbral pair that fragments re-encrypt towards
    """

    account: str
    signing_key: str
    box: BoxKeyPair
    pre: PreKeyPair

    @property
    def signing_pubkey(self) -> str:
        return ed25519_pubkey_hex(self.signing_key)

    @staticmethod
    def from_hex(*, account: str, signing_key: str, box_secret: str, pre_secret: str) -> "NodeKeys":
        if not account:
            raise ValueError("node account is required")
        return NodeKeys(
            account=account,
            signing_key=signing_key,
            box=BoxKeyPair.from_secret(decode_bytes(box_secret)),
            pre=PreKeyPair.from_secret(decode_bytes(pre_secret)),
        )
