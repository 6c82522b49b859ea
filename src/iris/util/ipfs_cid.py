# src/iris/util/ipfs_cid.py
from __future__ import annotations

"""IPFS cid and multiaddress validation helpers.

Validation stays lightweight:
  - lenient cid mode accepts any short alphanumeric token (the shape every
    multibase cid encoding shares); strict mode recognises CIDv0 (base58btc,
    "Qm" + 44 chars) and CIDv1 base32 ("b" + lowercase a-z2-7).
  - multiaddresses are split into /proto/value pairs and each value checked
    against the protocol it belongs to.

This is NOT a full multiformats parser. The goal is to fail closed on obviously
bad or dangerous inputs before they are interpolated into daemon API calls.
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import List, Tuple


_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bagy...)
_CID_TOKEN_RE = re.compile(r"^[A-Za-z0-9]+$")

_PEER_ID_RE = re.compile(r"^[A-Za-z0-9]+$")
_DNS_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9\-\.]{0,251}[A-Za-z0-9])?$")

# protocol -> takes a value segment
_MULTIADDR_PROTOCOLS = {
    "ip4": True,
    "ip6": True,
    "dns": True,
    "dns4": True,
    "dns6": True,
    "tcp": True,
    "udp": True,
    "p2p": True,
    "ipfs": True,
    "quic": False,
    "quic-v1": False,
    "ws": False,
    "wss": False,
    "p2p-circuit": False,
}


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str


@dataclass(frozen=True)
class MultiaddrValidation:
    ok: bool
    reason: str
    multiaddr: str
    parts: Tuple[Tuple[str, str], ...] = ()


def normalize_cid(cid: str) -> str:
    return (cid or "").strip()


def validate_ipfs_cid(cid: str, *, strict: bool = False, max_len: int = 128) -> CidValidation:
    c = normalize_cid(cid)
    if not c:
        return CidValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return CidValidation(False, "cid_too_long", c)

    if not strict:
        if _CID_TOKEN_RE.match(c):
            return CidValidation(True, "ok", c)
        return CidValidation(False, "invalid_cid_format", c)

    if _CIDV0_RE.match(c):
        return CidValidation(True, "ok", c)
    if _CIDV1_BASE32_RE.match(c):
        return CidValidation(True, "ok", c)
    return CidValidation(False, "invalid_cid_format", c)


def _value_ok(proto: str, value: str) -> bool:
    if proto == "ip4":
        try:
            ipaddress.IPv4Address(value)
            return True
        except ValueError:
            return False
    if proto == "ip6":
        try:
            ipaddress.IPv6Address(value)
            return True
        except ValueError:
            return False
    if proto in {"tcp", "udp"}:
        if not value.isdigit():
            return False
        return 0 <= int(value) <= 65535
    if proto in {"dns", "dns4", "dns6"}:
        return bool(_DNS_RE.match(value))
    if proto in {"p2p", "ipfs"}:
        return bool(_PEER_ID_RE.match(value)) and len(value) <= 128
    return False


def validate_multiaddr(multiaddr: str, *, max_len: int = 512) -> MultiaddrValidation:
    m = (multiaddr or "").strip()
    if not m:
        return MultiaddrValidation(False, "missing_multiaddr", "")
    if len(m) > int(max_len):
        return MultiaddrValidation(False, "multiaddr_too_long", m)
    if not m.startswith("/"):
        return MultiaddrValidation(False, "invalid_multiaddr_format", m)

    segs = m.split("/")[1:]
    if not segs or any(s == "" for s in segs):
        return MultiaddrValidation(False, "invalid_multiaddr_format", m)

    parts: List[Tuple[str, str]] = []
    i = 0
    while i < len(segs):
        proto = segs[i]
        takes_value = _MULTIADDR_PROTOCOLS.get(proto)
        if takes_value is None:
            return MultiaddrValidation(False, "unknown_multiaddr_protocol", m)
        if not takes_value:
            parts.append((proto, ""))
            i += 1
            continue
        if i + 1 >= len(segs):
            return MultiaddrValidation(False, "missing_multiaddr_value", m)
        value = segs[i + 1]
        if not _value_ok(proto, value):
            return MultiaddrValidation(False, f"invalid_{proto}_value", m)
        parts.append((proto, value))
        i += 2

    return MultiaddrValidation(True, "ok", m, tuple(parts))
