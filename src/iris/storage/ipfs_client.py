# src/iris/storage/ipfs_client.py
from __future__ import annotations

"""Content-store seam and its Kubo (go-ipfs) HTTP API implementation.

Every KuboClient call is a POST to /api/v0/<cmd> with a bounded timeout. Any
failure (unreachable daemon, non-2xx, unparsable body) raises TransportError so
callers can isolate it per command.
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from iris.runtime.errors import TransportError

Json = Dict[str, Any]

log = logging.getLogger("iris.ipfs")


@dataclass(frozen=True)
class NodeIdentity:
    public_key: str
    addresses: Tuple[str, ...]


@dataclass(frozen=True)
class UsageStats:
    used_bytes: int
    max_bytes: int
    num_objects: int


class ContentStore(Protocol):
    def connect(self, multiaddress: str) -> None: ...

    def disconnect(self, multiaddress: str) -> None: ...

    def fetch(self, cid: str) -> bytes: ...

    def pin(self, cid: str) -> None: ...

    def identity(self) -> NodeIdentity: ...

    def set_config(self, key: str, value: str) -> None: ...

    def get_usage_stats(self) -> UsageStats: ...


def _safe_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


class KuboClient:
    def __init__(self, api_url: str = "http://127.0.0.1:5001", *, timeout_s: float = 10.0) -> None:
        base = str(api_url or "").strip() or "http://127.0.0.1:5001"
        self._base = base.rstrip("/")
        self._timeout_s = float(timeout_s)

    def _call(self, cmd: str, args: Sequence[Tuple[str, str]] = ()) -> bytes:
        qs = urllib.parse.urlencode(list(args))
        url = f"{self._base}/api/v0/{cmd}?{qs}" if qs else f"{self._base}/api/v0/{cmd}"

        # Kubo rejects GET on most commands.
        req = urllib.request.Request(url=url, method="POST", data=b"")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                body = resp.read()
        except urllib.error.HTTPError as e:
            try:
                msg = e.read().decode("utf-8", errors="replace")
            except Exception:
                msg = str(e)
            raise TransportError("transport:http_error", cmd, {"status": int(getattr(e, "code", 0) or 0), "body": msg[:500]}) from e
        except (urllib.error.URLError, OSError) as e:
            raise TransportError("transport:unreachable", cmd, {"err": str(e)}) from e

        if not (200 <= status < 300):
            raise TransportError("transport:http_error", cmd, {"status": status})
        return body

    def _call_json(self, cmd: str, args: Sequence[Tuple[str, str]] = ()) -> Json:
        body = self._call(cmd, args)
        try:
            obj = json.loads(body.decode("utf-8")) if body.strip() else {}
        except ValueError as e:
            raise TransportError("transport:bad_response", cmd, {"err": str(e)}) from e
        return obj if isinstance(obj, dict) else {}

    def connect(self, multiaddress: str) -> None:
        self._call_json("swarm/connect", [("arg", multiaddress)])

    def disconnect(self, multiaddress: str) -> None:
        self._call_json("swarm/disconnect", [("arg", multiaddress)])

    def fetch(self, cid: str) -> bytes:
        return self._call("cat", [("arg", cid)])

    def pin(self, cid: str) -> None:
        self._call_json("pin/add", [("arg", cid), ("recursive", "true")])

    def identity(self) -> NodeIdentity:
        obj = self._call_json("id")
        pid = obj.get("ID")
        if not isinstance(pid, str) or not pid:
            raise TransportError("transport:bad_response", "id", {"err": "missing_ID"})
        addrs = obj.get("Addresses")
        addresses: List[str] = [str(a) for a in addrs] if isinstance(addrs, list) else []
        return NodeIdentity(public_key=pid, addresses=tuple(addresses))

    def set_config(self, key: str, value: str) -> None:
        self._call_json("config", [("arg", key), ("arg", value)])

    def get_usage_stats(self) -> UsageStats:
        obj = self._call_json("repo/stat")
        return UsageStats(
            used_bytes=_safe_int(obj.get("RepoSize")),
            max_bytes=_safe_int(obj.get("StorageMax")),
            num_objects=_safe_int(obj.get("NumObjects")),
        )


def format_storage_max(max_bytes: int) -> str:
    """Kubo's Datastore.StorageMax takes a humanized size string."""
    n = max(0, int(max_bytes))
    for unit, size in (("GB", 10**9), ("MB", 10**6), ("KB", 10**3)):
        if n >= size and n % size == 0:
            return f"{n // size}{unit}"
    return f"{n}B"


def identity_from_ledger(obj: Optional[Json]) -> Optional[NodeIdentity]:
    if not isinstance(obj, dict):
        return None
    pk = obj.get("public_key")
    if not isinstance(pk, str):
        return None
    addrs = obj.get("addresses")
    return NodeIdentity(public_key=pk, addresses=tuple(str(a) for a in addrs) if isinstance(addrs, list) else ())
