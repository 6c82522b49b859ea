# src/iris/ledger/queues.py
from __future__ import annotations

"""Gateway queue layout inside the ledger snapshot.

State keys owned here:

  ingestion_commands   {custodian: [IngestionCommand obj, ...]}
  ejection_queue       [DataCommand obj, ...]
  ingestion_staging    {owner: data public key hex}
  metadata             {asset_id (str): {"cid": str, "public_key": str | None}}
  next_asset_id        int

The module-level functions mutate a state dict in place and are meant to run
inside LedgerStore.update(). QueueStore wraps them for callers that do not hold a
transaction.

Queues never dedupe at insert. remove() deletes the first structurally-equal
entry and is a no-op when there is none.
"""

import copy
from typing import Any, Dict, List, Optional, Union

from iris.ledger.commands import DataCommand, IngestionCommand, data_command_from_ledger_obj
from iris.runtime.sqlite_db import LedgerStore

Json = Dict[str, Any]

EJECTION_QUEUE = "__ejection__"

DEFAULT_INITIAL_ASSET_ID = 2


def genesis_state(*, initial_asset_id: int = DEFAULT_INITIAL_ASSET_ID) -> Json:
    return {
        "height": 0,
        "validators": {},
        "ingestion_commands": {},
        "ejection_queue": [],
        "ingestion_staging": {},
        "capsules": {},
        "fragments": {},
        "metadata": {},
        "next_asset_id": int(initial_asset_id),
        "finalized": {},
        "asset_index": [],
        "bootstrap_nodes": {},
        "ipfs_bridge": {},
        "storage_quotas": {},
        "usage_reports": {},
        "pinners": {},
        "rpc_ready": {},
    }


def _dict_at(state: Json, key: str) -> Json:
    v = state.get(key)
    if not isinstance(v, dict):
        v = {}
        state[key] = v
    return v


def _list_at(state: Json, key: str) -> List[Any]:
    v = state.get(key)
    if not isinstance(v, list):
        v = []
        state[key] = v
    return v


def _remove_first(seq: List[Any], obj: Json) -> bool:
    for i, existing in enumerate(seq):
        if existing == obj:
            del seq[i]
            return True
    return False


# ---------------------------------------------------------------------------
# Ingestion queues (per custodian)
# ---------------------------------------------------------------------------


def enqueue_ingestion(state: Json, custodian: str, cmd: Json) -> int:
    """Append; returns the new queue length."""
    queues = _dict_at(state, "ingestion_commands")
    q = queues.get(custodian)
    if not isinstance(q, list):
        q = []
        queues[custodian] = q
    q.append(copy.deepcopy(cmd))
    return len(q)


def list_ingestion(state: Json, custodian: str) -> List[Json]:
    queues = state.get("ingestion_commands")
    q = queues.get(custodian) if isinstance(queues, dict) else None
    return copy.deepcopy(q) if isinstance(q, list) else []


def is_ingestion_pending(state: Json, custodian: str, cmd: Json) -> bool:
    return any(existing == cmd for existing in list_ingestion(state, custodian))


def remove_ingestion(state: Json, custodian: str, cmd: Json) -> bool:
    queues = state.get("ingestion_commands")
    if not isinstance(queues, dict):
        return False
    q = queues.get(custodian)
    if not isinstance(q, list):
        return False
    removed = _remove_first(q, cmd)
    if removed and not q:
        del queues[custodian]
    return removed


# ---------------------------------------------------------------------------
# Ejection queue (global)
# ---------------------------------------------------------------------------


def enqueue_ejection(state: Json, cmd: Json) -> int:
    q = _list_at(state, "ejection_queue")
    q.append(copy.deepcopy(cmd))
    return len(q)


def list_ejection(state: Json) -> List[Json]:
    q = state.get("ejection_queue")
    return copy.deepcopy(q) if isinstance(q, list) else []


def is_ejection_pending(state: Json, cmd: Json) -> bool:
    return any(existing == cmd for existing in list_ejection(state))


def remove_ejection(state: Json, cmd: Json) -> bool:
    return _remove_first(_list_at(state, "ejection_queue"), cmd)


def drain_ejection(state: Json) -> int:
    """Empty the ejection queue; returns how many entries were dropped."""
    q = _list_at(state, "ejection_queue")
    n = len(q)
    state["ejection_queue"] = []
    return n


# ---------------------------------------------------------------------------
# Staging (owner -> public key)
# ---------------------------------------------------------------------------


def staged_public_key(state: Json, owner: str) -> Optional[str]:
    staging = state.get("ingestion_staging")
    v = staging.get(owner) if isinstance(staging, dict) else None
    return v if isinstance(v, str) and v else None


def put_staged(state: Json, owner: str, public_key_hex: str) -> None:
    _dict_at(state, "ingestion_staging")[owner] = str(public_key_hex)


def pop_staged(state: Json, owner: str) -> Optional[str]:
    staging = state.get("ingestion_staging")
    if not isinstance(staging, dict):
        return None
    v = staging.pop(owner, None)
    return v if isinstance(v, str) and v else None


# ---------------------------------------------------------------------------
# Asset metadata
# ---------------------------------------------------------------------------


def allocate_asset_id(state: Json) -> int:
    try:
        nxt = int(state.get("next_asset_id", DEFAULT_INITIAL_ASSET_ID))
    except Exception:
        nxt = DEFAULT_INITIAL_ASSET_ID
    state["next_asset_id"] = nxt + 1
    return nxt


def put_metadata(state: Json, asset_id: int, *, cid: str, public_key: Optional[str]) -> None:
    _dict_at(state, "metadata")[str(int(asset_id))] = {"cid": str(cid), "public_key": public_key}


def get_metadata(state: Json, asset_id: int) -> Optional[Json]:
    md = state.get("metadata")
    rec = md.get(str(int(asset_id))) if isinstance(md, dict) else None
    return copy.deepcopy(rec) if isinstance(rec, dict) else None


def remove_metadata(state: Json, asset_id: int) -> bool:
    md = state.get("metadata")
    if not isinstance(md, dict):
        return False
    return md.pop(str(int(asset_id)), None) is not None


# ---------------------------------------------------------------------------
# Transaction-holding wrapper
# ---------------------------------------------------------------------------


Command = Union[IngestionCommand, DataCommand]


class QueueStore:
    """Queue operations over a LedgerStore, one atomic update per call.

    target is a custodian account for ingestion queues, or EJECTION_QUEUE.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def enqueue(self, target: str, command: Command) -> int:
        obj = command.to_ledger_obj()
        if target == EJECTION_QUEUE:
            return self._store.update(lambda st: enqueue_ejection(st, obj))
        if not isinstance(command, IngestionCommand):
            raise TypeError("ingestion queues only hold IngestionCommand")
        return self._store.update(lambda st: enqueue_ingestion(st, target, obj))

    def list(self, target: str) -> List[Command]:
        st = self._store.read()
        if target == EJECTION_QUEUE:
            return [data_command_from_ledger_obj(o) for o in list_ejection(st)]
        return [IngestionCommand.from_ledger_obj(o) for o in list_ingestion(st, target)]

    def remove(self, target: str, command: Command) -> bool:
        obj = command.to_ledger_obj()
        if target == EJECTION_QUEUE:
            return self._store.update(lambda st: remove_ejection(st, obj))
        return self._store.update(lambda st: remove_ingestion(st, target, obj))

    def drain_all(self) -> int:
        return self._store.update(drain_ejection)
