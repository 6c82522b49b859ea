# src/iris/ledger/commands.py
from __future__ import annotations

"""Immutable command value objects carried by the gateway queues.

Every command serializes to a plain JSON object (to_ledger_obj) so it can live in
the ledger snapshot, and equality on the ledger is structural equality of those
objects. The fingerprint of a command is derived from its canonical JSON and is
what the registrar uses to make finalization idempotent.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Union

from iris.runtime.sqlite_db import canon_json

Json = Dict[str, Any]


def _as_str(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""


def _as_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def compute_command_fingerprint(obj: Json) -> str:
    h = hashlib.sha256(canon_json(obj).encode("utf-8")).hexdigest()
    return f"cmd:{h}"


@dataclass(frozen=True)
class IngestionCommand:
    """Fetch-and-stage request addressed to one custodian."""

    owner: str
    cid: str
    multiaddress: str
    estimated_size: int
    balance: int

    def to_ledger_obj(self) -> Json:
        return {
            "owner": self.owner,
            "cid": self.cid,
            "multiaddress": self.multiaddress,
            "estimated_size": int(self.estimated_size),
            "balance": int(self.balance),
        }

    @staticmethod
    def from_ledger_obj(obj: Any) -> "IngestionCommand":
        if not isinstance(obj, dict):
            raise ValueError("ingestion command must be an object")
        return IngestionCommand(
            owner=_as_str(obj.get("owner")),
            cid=_as_str(obj.get("cid")),
            multiaddress=_as_str(obj.get("multiaddress")),
            estimated_size=_as_int(obj.get("estimated_size")),
            balance=_as_int(obj.get("balance")),
        )

    def fingerprint(self) -> str:
        return compute_command_fingerprint(self.to_ledger_obj())


@dataclass(frozen=True)
class AddBytes:
    """Fetch `cid` from the peer at `multiaddress` and pin it on behalf of `owner`."""

    owner: str
    cid: str
    multiaddress: str

    def to_ledger_obj(self) -> Json:
        return {"type": "AddBytes", "owner": self.owner, "cid": self.cid, "multiaddress": self.multiaddress}


@dataclass(frozen=True)
class CatBytes:
    """Release request: make asset `asset_id` retrievable for `requester`."""

    requester: str
    owner: str
    asset_id: int

    def to_ledger_obj(self) -> Json:
        return {"type": "CatBytes", "requester": self.requester, "owner": self.owner, "asset_id": int(self.asset_id)}


@dataclass(frozen=True)
class PinCID:
    cid: str

    def to_ledger_obj(self) -> Json:
        return {"type": "PinCID", "cid": self.cid}


@dataclass(frozen=True)
class AddToIndex:
    """Emitted when an asset is created: add it to the shared index."""

    asset_id: int
    cid: str

    def to_ledger_obj(self) -> Json:
        return {"type": "AddToIndex", "asset_id": int(self.asset_id), "cid": self.cid}


DataCommand = Union[AddBytes, CatBytes, PinCID, AddToIndex]

DATA_COMMAND_TYPES = ("AddBytes", "CatBytes", "PinCID", "AddToIndex")


def data_command_from_ledger_obj(obj: Any) -> DataCommand:
    if not isinstance(obj, dict):
        raise ValueError("data command must be an object")
    t = _as_str(obj.get("type"))
    if t == "AddBytes":
        return AddBytes(
            owner=_as_str(obj.get("owner")),
            cid=_as_str(obj.get("cid")),
            multiaddress=_as_str(obj.get("multiaddress")),
        )
    if t == "CatBytes":
        return CatBytes(
            requester=_as_str(obj.get("requester")),
            owner=_as_str(obj.get("owner")),
            asset_id=_as_int(obj.get("asset_id")),
        )
    if t == "PinCID":
        return PinCID(cid=_as_str(obj.get("cid")))
    if t == "AddToIndex":
        return AddToIndex(asset_id=_as_int(obj.get("asset_id")), cid=_as_str(obj.get("cid")))
    raise ValueError(f"unknown data command type: {t!r}")
