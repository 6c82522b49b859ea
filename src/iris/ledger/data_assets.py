# src/iris/ledger/data_assets.py
from __future__ import annotations

"""iris.ledger.data_assets

Gateway ledger operations: requests from owners, signed reports from workers.

Key invariants:
  - every state change goes through one LedgerStore.update() call, so an
    operation either applies fully or not at all
  - a completion report is applied only while its command is still pending in
    the reporter's queue and the public key it names is still the owner's
    staged key; anything else is a no-op receipt
  - finalization is idempotent per command (see registrar), so a duplicate
    enqueue yields one asset and a replayed report yields none
  - at most one staged public key per owner; re-staging the same key is a no-op,
    staging a different key while one is staged is a conflict
  - ejection entries leave the queue only when a worker reports them done or
    an operator explicitly drains the queue
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from iris.crypto.proxy_reencrypt import Capsule, EncryptedFragment
from iris.ledger.command_schema import validate_payload
from iris.ledger.commands import (
    CatBytes,
    DataCommand,
    IngestionCommand,
    data_command_from_ledger_obj,
)
from iris.ledger.queues import (
    drain_ejection,
    enqueue_ejection,
    enqueue_ingestion,
    get_metadata,
    is_ejection_pending,
    is_ingestion_pending,
    list_ejection,
    list_ingestion,
    pop_staged,
    put_staged,
    remove_ejection,
    remove_ingestion,
    remove_metadata,
    staged_public_key,
)
from iris.ledger.registrar import ResultHandler
from iris.ledger.reports import Report, verify_report
from iris.runtime.errors import AuthorizationError, LedgerError
from iris.runtime.metrics import inc_counter
from iris.runtime.sqlite_db import LedgerStore
from iris.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("iris.ledger")


@dataclass(frozen=True)
class AssetMetadata:
    cid: str
    public_key: Optional[str]


def _as_str(x: Any) -> str:
    return x if isinstance(x, str) else ""


def _as_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _ensure_root_dict(state: Json, key: str) -> Json:
    cur = state.get(key)
    if not isinstance(cur, dict):
        cur = {}
        state[key] = cur
    return cur


def _bump_height(state: Json) -> int:
    h = _as_int(state.get("height"), 0) + 1
    state["height"] = h
    return h


def _add_unique(seq_owner: Json, key: str, value: Any) -> bool:
    cur = seq_owner.get(key)
    if not isinstance(cur, list):
        cur = []
        seq_owner[key] = cur
    if value in cur:
        return False
    cur.append(value)
    cur.sort(key=lambda v: str(v))
    return True


def _stage(state: Json, owner: str, public_key_hex: str) -> bool:
    """Returns True when newly staged, False when the same key was already staged."""
    existing = staged_public_key(state, owner)
    if existing is not None:
        if existing == public_key_hex:
            return False
        raise LedgerError("conflict", "owner_already_staged", {"owner": owner})
    put_staged(state, owner, public_key_hex)
    return True


def _drop_artifacts(state: Json, public_key_hex: str) -> None:
    capsules = state.get("capsules")
    if isinstance(capsules, dict):
        capsules.pop(public_key_hex, None)
    fragments = state.get("fragments")
    if isinstance(fragments, dict):
        fragments.pop(public_key_hex, None)


class DataAssets:
    def __init__(self, store: LedgerStore, *, registrar: ResultHandler) -> None:
        self._store = store
        self._registrar = registrar

    @property
    def store(self) -> LedgerStore:
        return self._store

    # ------------------------------------------------------------------
    # Validator registry
    # ------------------------------------------------------------------

    def set_validator(self, account: str, pubkey: str, *, active: bool = True) -> Json:
        acct = _as_str(account).strip()
        pk = _as_str(pubkey).strip()
        if not acct or not pk:
            raise LedgerError("invalid_payload", "missing_account_or_pubkey", {"account": acct})

        def mut(st: Json) -> Json:
            _ensure_root_dict(st, "validators")[acct] = {"pubkey": pk, "active": bool(active)}
            _bump_height(st)
            return {"ok": True, "applied": "SET_VALIDATOR", "account": acct, "active": bool(active)}

        return self._store.update(mut)

    def is_validator(self, account: str) -> bool:
        rec = _ensure_root_dict(self._store.read(), "validators").get(account)
        return isinstance(rec, dict) and bool(rec.get("active", False))

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def submit_ingestion_request(self, *, custodian: str, command: IngestionCommand) -> Json:
        p = validate_payload("INGESTION_REQUEST", {"custodian": custodian, "command": command.to_ledger_obj()})
        cmd_obj = p["command"]

        def mut(st: Json) -> Json:
            if custodian not in _ensure_root_dict(st, "validators"):
                raise LedgerError("not_found", "unknown_custodian", {"custodian": custodian})
            n = enqueue_ingestion(st, custodian, cmd_obj)
            _bump_height(st)
            return {"ok": True, "applied": "INGESTION_REQUEST", "custodian": custodian, "queue_len": n}

        out = self._store.update(mut)
        inc_counter("ledger_ingestion_requests_total", 1)
        log_event(log, "ingestion_enqueued", custodian=custodian, owner=command.owner, cid=command.cid)
        return out

    def cancel_request(self, *, owner: str, custodian: str, command: IngestionCommand) -> Json:
        """Withdraw a pending command and the owner's staged artifacts."""
        if command.owner != owner:
            raise AuthorizationError("auth:not_owner", "only_owner_may_cancel", {"owner": owner})
        cmd_obj = command.to_ledger_obj()

        def mut(st: Json) -> Json:
            if not remove_ingestion(st, custodian, cmd_obj):
                return {"ok": False, "applied": False, "reason": "not_pending"}
            pk = pop_staged(st, owner)
            if pk is not None:
                _drop_artifacts(st, pk)
            _bump_height(st)
            return {"ok": True, "applied": "CANCEL", "unstaged": pk is not None}

        out = self._store.update(mut)
        if out.get("ok"):
            inc_counter("ledger_cancellations_total", 1)
        return out

    def list_pending(self, target: str) -> List[IngestionCommand]:
        return [IngestionCommand.from_ledger_obj(o) for o in list_ingestion(self._store.read(), target)]

    # ------------------------------------------------------------------
    # Staging and encryption artifacts
    # ------------------------------------------------------------------

    def stage_result(self, owner: str, public_key: str) -> Json:
        pk = _as_str(public_key).strip()
        if not owner or not pk:
            raise LedgerError("invalid_payload", "missing_owner_or_public_key", {"owner": owner})

        def mut(st: Json) -> Json:
            fresh = _stage(st, owner, pk)
            if fresh:
                _bump_height(st)
            return {"ok": True, "applied": "STAGE", "deduped": not fresh}

        return self._store.update(mut)

    def take_staged(self, owner: str) -> Optional[str]:
        def mut(st: Json) -> Optional[str]:
            pk = pop_staged(st, owner)
            if pk is not None:
                _bump_height(st)
            return pk

        return self._store.update(mut)

    def staged_public_key(self, owner: str) -> Optional[str]:
        return staged_public_key(self._store.read(), owner)

    def submit_encryption_artifacts(
        self,
        *,
        owner: str,
        capsule: Capsule,
        fragments: Mapping[str, Sequence[EncryptedFragment]],
    ) -> Json:
        """Stage `owner`'s data key and publish the capsule plus per-custodian fragments."""
        p = validate_payload(
            "ENCRYPTION_ARTIFACTS",
            {
                "owner": owner,
                "capsule": capsule.to_ledger_obj(),
                "fragments": {c: [f.to_ledger_obj() for f in fs] for c, fs in fragments.items()},
            },
        )
        pk_hex = capsule.public_key.hex()

        def mut(st: Json) -> Json:
            fresh = _stage(st, owner, pk_hex)
            _ensure_root_dict(st, "capsules")[pk_hex] = p["capsule"]
            _ensure_root_dict(st, "fragments")[pk_hex] = p["fragments"]
            _bump_height(st)
            return {"ok": True, "applied": "ENCRYPTION_ARTIFACTS", "public_key": pk_hex, "deduped": not fresh}

        return self._store.update(mut)

    def capsule(self, public_key: str) -> Optional[Capsule]:
        obj = _ensure_root_dict(self._store.read(), "capsules").get(public_key)
        return Capsule.from_ledger_obj(obj) if isinstance(obj, dict) else None

    def fragments(self, public_key: str, custodian: str) -> List[EncryptedFragment]:
        by_custodian = _ensure_root_dict(self._store.read(), "fragments").get(public_key)
        if not isinstance(by_custodian, dict):
            return []
        raw = by_custodian.get(custodian)
        if not isinstance(raw, list):
            return []
        return [EncryptedFragment.from_ledger_obj(o) for o in raw]

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def submit_completion_report(self, report: Report) -> Json:
        """Apply a custodian's signed "fetched and staged" report.

        Only applies while the command is still pending in the reporter's queue,
        and only when the report's public_key matches the owner's staged key at
        apply time. A mismatch means staging changed while the worker was
        fetching; the command stays queued for a retry. Registrar failures
        propagate and leave the command queued.
        """
        if report.kind != "INGESTION_COMPLETE":
            raise LedgerError("invalid_payload", "wrong_report_kind", {"kind": report.kind})
        p = validate_payload(report.kind, report.payload)
        custodian = p["custodian"]
        cmd_obj = p["command"]
        reported_pk = p.get("public_key")
        if custodian != report.reporter:
            raise AuthorizationError("auth:custodian_mismatch", "reporter_is_not_custodian", {"reporter": report.reporter})

        def mut(st: Json) -> Json:
            verify_report(st, report)
            if not is_ingestion_pending(st, custodian, cmd_obj):
                return {"ok": True, "applied": False, "deduped": True, "reason": "not_pending"}

            cmd = IngestionCommand.from_ledger_obj(cmd_obj)
            current_pk = staged_public_key(st, cmd.owner)
            if reported_pk != current_pk:
                return {
                    "ok": False,
                    "applied": False,
                    "deduped": False,
                    "reason": "staging_changed",
                    "staged": current_pk is not None,
                }

            res = self._registrar.finalize(
                st,
                custodian=custodian,
                command=cmd,
                public_key=current_pk,
            )
            if not res.get("deduped"):
                pop_staged(st, cmd.owner)
            remove_ingestion(st, custodian, cmd_obj)
            _bump_height(st)
            return {
                "ok": True,
                "applied": "INGESTION_COMPLETE",
                "asset_id": int(res["asset_id"]),
                "deduped": bool(res.get("deduped")),
            }

        out = self._store.update(mut)
        if out.get("applied"):
            inc_counter("ledger_completions_total", 1)
        else:
            inc_counter("ledger_completions_noop_total", 1)
        log_event(log, "completion_report", reporter=report.reporter, cid=cmd_obj.get("cid"), **out)
        return out

    # ------------------------------------------------------------------
    # Ejection
    # ------------------------------------------------------------------

    def submit_ejection_request(self, command: DataCommand) -> Json:
        p = validate_payload("EJECTION_REQUEST", {"command": command.to_ledger_obj()})

        def mut(st: Json) -> Json:
            n = enqueue_ejection(st, p["command"])
            _bump_height(st)
            return {"ok": True, "applied": "EJECTION_REQUEST", "queue_len": n}

        return self._store.update(mut)

    def request_release(self, *, requester: str, owner: str, asset_id: int) -> Json:
        return self.submit_ejection_request(CatBytes(requester=requester, owner=owner, asset_id=int(asset_id)))

    def list_ejections(self) -> List[DataCommand]:
        return [data_command_from_ledger_obj(o) for o in list_ejection(self._store.read())]

    def drain_ejections(self) -> int:
        def mut(st: Json) -> int:
            n = drain_ejection(st)
            if n:
                _bump_height(st)
            return n

        n = self._store.update(mut)
        if n:
            log.warning("ejection queue drained dropped=%s", n)
        return n

    def submit_ejection_report(self, report: Report) -> Json:
        """Apply RPC_READY, PIN_RESULT or INDEX_UPDATE for a queued data command."""
        if report.kind not in {"RPC_READY", "PIN_RESULT", "INDEX_UPDATE"}:
            raise LedgerError("invalid_payload", "wrong_report_kind", {"kind": report.kind})
        p = validate_payload(report.kind, report.payload)
        cmd_obj = p["command"]

        def mut(st: Json) -> Json:
            verify_report(st, report)
            if not is_ejection_pending(st, cmd_obj):
                return {"ok": True, "applied": False, "deduped": True, "reason": "not_pending"}

            if report.kind == "RPC_READY":
                asset_id = _as_int(cmd_obj.get("asset_id"))
                md = get_metadata(st, asset_id)
                if md is None or md.get("cid") != p["cid"]:
                    raise LedgerError("conflict", "cid_mismatch", {"asset_id": asset_id})
                _add_unique(_ensure_root_dict(st, "rpc_ready"), str(asset_id), report.reporter)
            elif report.kind == "PIN_RESULT":
                if not p["pinned"]:
                    return {"ok": False, "applied": False, "reason": "not_pinned"}
                _add_unique(_ensure_root_dict(st, "pinners"), cmd_obj["cid"], report.reporter)
            else:
                asset_id = _as_int(cmd_obj.get("asset_id"))
                idx = st.get("asset_index")
                if not isinstance(idx, list):
                    idx = []
                if asset_id not in idx:
                    idx.append(asset_id)
                    idx.sort()
                st["asset_index"] = idx
                _add_unique(_ensure_root_dict(st, "pinners"), cmd_obj["cid"], report.reporter)

            remove_ejection(st, cmd_obj)
            _bump_height(st)
            return {"ok": True, "applied": report.kind, "deduped": False}

        out = self._store.update(mut)
        if out.get("applied"):
            inc_counter("ledger_ejection_reports_total", 1)
        return out

    def submit_rpc_ready(self, report: Report) -> Json:
        if report.kind != "RPC_READY":
            raise LedgerError("invalid_payload", "wrong_report_kind", {"kind": report.kind})
        return self.submit_ejection_report(report)

    def rpc_ready_nodes(self, asset_id: int) -> List[str]:
        v = _ensure_root_dict(self._store.read(), "rpc_ready").get(str(int(asset_id)))
        return list(v) if isinstance(v, list) else []

    def pinners(self, cid: str) -> List[str]:
        v = _ensure_root_dict(self._store.read(), "pinners").get(cid)
        return list(v) if isinstance(v, list) else []

    def asset_index(self) -> List[int]:
        v = self._store.read().get("asset_index")
        return [int(x) for x in v] if isinstance(v, list) else []

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def metadata(self, asset_id: int) -> Optional[AssetMetadata]:
        md = get_metadata(self._store.read(), asset_id)
        if md is None:
            return None
        pk = md.get("public_key")
        return AssetMetadata(cid=_as_str(md.get("cid")), public_key=pk if isinstance(pk, str) else None)

    def remove_asset(self, asset_id: int) -> Json:
        """Drop an asset's metadata, index membership and ready nodes.

        Called by the asset-class layer when an asset is destroyed. Release
        requests still queued for it are deferred from then on.
        """
        aid = _as_int(asset_id, -1)
        if aid < 0:
            raise LedgerError("invalid_payload", "bad_asset_id", {"asset_id": asset_id})

        def mut(st: Json) -> Json:
            if not remove_metadata(st, aid):
                return {"ok": True, "applied": False, "deduped": True, "reason": "no_such_asset"}
            idx = st.get("asset_index")
            if isinstance(idx, list):
                st["asset_index"] = [x for x in idx if _as_int(x, -1) != aid]
            _ensure_root_dict(st, "rpc_ready").pop(str(aid), None)
            _bump_height(st)
            return {"ok": True, "applied": "REMOVE_ASSET", "asset_id": aid}

        out = self._store.update(mut)
        if out.get("applied"):
            log_event(log, "asset_removed", asset_id=aid)
        return out

    # ------------------------------------------------------------------
    # Node identity, quotas, usage
    # ------------------------------------------------------------------

    def submit_identity(self, report: Report) -> Json:
        if report.kind != "IDENTITY":
            raise LedgerError("invalid_payload", "wrong_report_kind", {"kind": report.kind})
        p = validate_payload(report.kind, report.payload)

        def mut(st: Json) -> Json:
            verify_report(st, report, require_active=False)
            bridge = _ensure_root_dict(st, "ipfs_bridge")
            nodes = _ensure_root_dict(st, "bootstrap_nodes")
            prev = bridge.get(report.reporter)
            if isinstance(prev, str) and prev != p["public_key"]:
                nodes.pop(prev, None)
            changed = prev != p["public_key"] or nodes.get(p["public_key"]) != p["addresses"]
            bridge[report.reporter] = p["public_key"]
            nodes[p["public_key"]] = list(p["addresses"])
            if changed:
                _bump_height(st)
            return {"ok": True, "applied": "IDENTITY", "changed": bool(changed)}

        return self._store.update(mut)

    def identity(self, account: str) -> Optional[Json]:
        st = self._store.read()
        pk = _ensure_root_dict(st, "ipfs_bridge").get(account)
        if not isinstance(pk, str):
            return None
        addrs = _ensure_root_dict(st, "bootstrap_nodes").get(pk)
        return {"public_key": pk, "addresses": list(addrs) if isinstance(addrs, list) else []}

    def set_storage_quota(self, account: str, max_bytes: int) -> Json:
        n = _as_int(max_bytes, -1)
        if n < 0:
            raise LedgerError("invalid_payload", "bad_quota", {"max_bytes": max_bytes})

        def mut(st: Json) -> Json:
            _ensure_root_dict(st, "storage_quotas")[account] = n
            _bump_height(st)
            return {"ok": True, "applied": "SET_QUOTA", "account": account, "max_bytes": n}

        return self._store.update(mut)

    def storage_quota(self, account: str) -> Optional[int]:
        v = _ensure_root_dict(self._store.read(), "storage_quotas").get(account)
        return int(v) if isinstance(v, int) else None

    def submit_usage_report(self, report: Report) -> Json:
        if report.kind != "USAGE":
            raise LedgerError("invalid_payload", "wrong_report_kind", {"kind": report.kind})
        p = validate_payload(report.kind, report.payload)

        def mut(st: Json) -> Json:
            verify_report(st, report, require_active=False)
            _ensure_root_dict(st, "usage_reports")[report.reporter] = dict(p, nonce=int(report.nonce))
            _bump_height(st)
            return {"ok": True, "applied": "USAGE"}

        return self._store.update(mut)

    def usage(self, account: str) -> Optional[Json]:
        v = _ensure_root_dict(self._store.read(), "usage_reports").get(account)
        return dict(v) if isinstance(v, dict) else None
