# src/iris/storage/gateway_worker.py
from __future__ import annotations

"""Per-node gateway worker: one cycle of queue consumption per tick.

tick(n) runs, in order:
  - identity/liveness check   when n % identity_every == 0 or the daemon is not known up
  - config sync               when n % config_sync_every == 0
  - ingestion processing      every tick, active validators only
  - ejection processing       every tick, active validators only
  - ejection queue reset      when ejection_reset_every > 0 and n % it == 0

If the daemon is known to be down, everything after the liveness check is
skipped for that tick.

Claim semantics are optimistic: the worker reads its queue, does the work, and
submits a signed report. The ledger re-checks that the command is still pending
when the report is applied, so cancelled or already-completed commands end as
no-op receipts.

Every command is processed in isolation. A failure is logged and counted, and
the command stays queued for the next tick.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from iris.config import GatewayConfig
from iris.crypto.keys import NodeKeys
from iris.crypto.proxy_reencrypt import decrypt_fragment, recombine
from iris.ledger.commands import AddBytes, AddToIndex, CatBytes, DataCommand, IngestionCommand, PinCID
from iris.ledger.data_assets import DataAssets
from iris.ledger.reports import Report, sign_report
from iris.runtime.errors import CryptoError, IrisError, TransportError
from iris.runtime.metrics import inc_counter, set_gauge
from iris.runtime.structured_logging import log_event
from iris.storage.ipfs_client import ContentStore, format_storage_max, identity_from_ledger
from iris.util.ipfs_cid import validate_ipfs_cid, validate_multiaddr

Json = Dict[str, Any]

log = logging.getLogger("iris.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


class RetrievalCache:
    """Bounded LRU of released content, keyed by cid."""

    def __init__(self, max_items: int = 256) -> None:
        self._max = max(1, int(max_items))
        self._items: "OrderedDict[str, bytes]" = OrderedDict()

    def put(self, cid: str, data: bytes) -> None:
        self._items[cid] = bytes(data)
        self._items.move_to_end(cid)
        while len(self._items) > self._max:
            self._items.popitem(last=False)

    def get(self, cid: str) -> Optional[bytes]:
        data = self._items.get(cid)
        if data is not None:
            self._items.move_to_end(cid)
        return data

    def __contains__(self, cid: object) -> bool:
        return cid in self._items

    def __len__(self) -> int:
        return len(self._items)


class GatewayWorker:
    def __init__(self, *, ledger: DataAssets, store: ContentStore, keys: NodeKeys, cfg: GatewayConfig) -> None:
        self._ledger = ledger
        self._store = store
        self._keys = keys
        self._cfg = cfg

        self._daemon_up: Optional[bool] = None
        self._last_nonce = 0
        self._ticks = 0
        self.cache = RetrievalCache(cfg.retrieval_cache_max)
        # Ingested artifacts as this node holds them (decrypted when a key was staged).
        self.staged = RetrievalCache(cfg.retrieval_cache_max)

    @property
    def account(self) -> str:
        return self._keys.account

    @property
    def daemon_up(self) -> Optional[bool]:
        return self._daemon_up

    def _next_nonce(self) -> int:
        self._last_nonce = max(_now_ms(), self._last_nonce + 1)
        return self._last_nonce

    def _sign(self, kind: str, payload: Json) -> Report:
        return sign_report(
            kind=kind,
            reporter=self.account,
            nonce=self._next_nonce(),
            payload=payload,
            privkey=self._keys.signing_key,
        )

    def _note_transport_failure(self, err: TransportError) -> None:
        # Force a liveness re-check next tick.
        if err.code == "transport:unreachable":
            self._daemon_up = None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def run_once(self) -> Json:
        """Run the next tick of this worker's own counter."""
        n = self._ticks
        self._ticks += 1
        return self.tick(n)

    def tick(self, n: int) -> Json:
        stats: Json = {
            "ok": True,
            "tick": int(n),
            "identity_checked": False,
            "identity_submitted": False,
            "daemon_up": None,
            "config_synced": False,
            "validator": False,
            "ingested": 0,
            "ingest_failed": 0,
            "ejected": 0,
            "deferred": 0,
            "eject_failed": 0,
            "noop": 0,
            "reset": 0,
            "skipped": False,
        }
        inc_counter("gateway_ticks_total", 1)

        if n % int(self._cfg.identity_every) == 0 or not self._daemon_up:
            self._check_identity(stats)
        stats["daemon_up"] = self._daemon_up

        if not self._daemon_up:
            stats["skipped"] = True
            inc_counter("gateway_ticks_skipped_total", 1)
            return stats

        if n % int(self._cfg.config_sync_every) == 0:
            self._sync_config(stats)

        if self._ledger.is_validator(self.account):
            stats["validator"] = True
            self._process_ingestion(stats)
            self._process_ejections(stats)

        reset_every = int(self._cfg.ejection_reset_every)
        if reset_every > 0 and n > 0 and n % reset_every == 0:
            stats["reset"] = self._ledger.drain_ejections()

        set_gauge("gateway_last_tick", int(n))
        return stats

    # ------------------------------------------------------------------
    # Identity / liveness
    # ------------------------------------------------------------------

    def _check_identity(self, stats: Json) -> None:
        stats["identity_checked"] = True
        try:
            ident = self._store.identity()
        except TransportError as e:
            self._daemon_up = False
            set_gauge("gateway_daemon_up", 0)
            inc_counter("gateway_daemon_down_total", 1)
            log_event(log, "daemon_unreachable", level=logging.WARNING, account=self.account, code=e.code, reason=e.reason)
            return

        self._daemon_up = True
        set_gauge("gateway_daemon_up", 1)

        if identity_from_ledger(self._ledger.identity(self.account)) == ident:
            return
        try:
            self._ledger.submit_identity(
                self._sign("IDENTITY", {"public_key": ident.public_key, "addresses": list(ident.addresses)})
            )
            stats["identity_submitted"] = True
            log_event(log, "identity_submitted", account=self.account, public_key=ident.public_key)
        except IrisError as e:
            log_event(log, "identity_submit_failed", level=logging.WARNING, account=self.account, code=e.code, reason=e.reason)

    # ------------------------------------------------------------------
    # Config sync
    # ------------------------------------------------------------------

    def _sync_config(self, stats: Json) -> None:
        try:
            quota = self._ledger.storage_quota(self.account)
            if quota is not None:
                self._store.set_config("Datastore.StorageMax", format_storage_max(quota))
            usage = self._store.get_usage_stats()
            self._ledger.submit_usage_report(
                self._sign(
                    "USAGE",
                    {"used_bytes": usage.used_bytes, "max_bytes": usage.max_bytes, "num_objects": usage.num_objects},
                )
            )
            stats["config_synced"] = True
            inc_counter("gateway_config_sync_total", 1)
        except TransportError as e:
            self._note_transport_failure(e)
            inc_counter("gateway_config_sync_failed_total", 1)
            log_event(log, "config_sync_failed", level=logging.WARNING, code=e.code, reason=e.reason)
        except IrisError as e:
            inc_counter("gateway_config_sync_failed_total", 1)
            log_event(log, "config_sync_failed", level=logging.WARNING, code=e.code, reason=e.reason)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _process_ingestion(self, stats: Json) -> None:
        pending = self._ledger.list_pending(self.account)
        set_gauge("gateway_ingestion_pending", len(pending))
        for cmd in pending:
            try:
                receipt = self._ingest_one(cmd)
            except IrisError as e:
                if isinstance(e, TransportError):
                    self._note_transport_failure(e)
                stats["ingest_failed"] += 1
                inc_counter("gateway_ingest_failed_total", 1)
                log_event(
                    log,
                    "ingest_failed",
                    level=logging.WARNING,
                    owner=cmd.owner,
                    cid=cmd.cid,
                    code=e.code,
                    reason=e.reason,
                )
                continue
            except Exception:
                stats["ingest_failed"] += 1
                inc_counter("gateway_ingest_failed_total", 1)
                log.exception("ingest crashed owner=%s cid=%s", cmd.owner, cmd.cid)
                continue

            if receipt.get("applied") and not receipt.get("deduped"):
                stats["ingested"] += 1
                inc_counter("gateway_ingested_total", 1)
            else:
                stats["noop"] += 1

    def _ingest_one(self, cmd: IngestionCommand) -> Json:
        cv = validate_ipfs_cid(cmd.cid, strict=bool(self._cfg.strict_cid))
        if not cv.ok:
            raise TransportError("transport:bad_cid", cv.reason, {"cid": cmd.cid})
        mv = validate_multiaddr(cmd.multiaddress)
        if not mv.ok:
            raise TransportError("transport:bad_multiaddr", mv.reason, {"multiaddress": cmd.multiaddress})

        self._store.connect(mv.multiaddr)
        try:
            data = self._store.fetch(cv.cid)
        finally:
            try:
                self._store.disconnect(mv.multiaddr)
            except TransportError as e:
                log_event(log, "disconnect_failed", level=logging.DEBUG, multiaddress=mv.multiaddr, reason=e.reason)
        inc_counter("gateway_fetch_total", 1)

        # The report names the key we decrypted under; the ledger refuses it if
        # the owner's staging changed in the meantime.
        staged = self._ledger.staged_public_key(cmd.owner)
        artifact = self._recover(staged, data) if staged is not None else data

        self._store.pin(cv.cid)
        receipt = self._ledger.submit_completion_report(
            self._sign(
                "INGESTION_COMPLETE",
                {"custodian": self.account, "command": cmd.to_ledger_obj(), "public_key": staged},
            )
        )
        if receipt.get("applied"):
            self.staged.put(cv.cid, artifact)
        return receipt

    def _recover(self, public_key_hex: str, ciphertext: bytes) -> bytes:
        """Decrypt a staged dataset with this node's fragments."""
        capsule = self._ledger.capsule(public_key_hex)
        if capsule is None:
            raise CryptoError("crypto", "capsule_missing", {"public_key": public_key_hex})
        verified = [decrypt_fragment(f, self._keys.box.secret) for f in self._ledger.fragments(public_key_hex, self.account)]
        plaintext = recombine(capsule, verified, ciphertext, self._keys.pre.secret)
        inc_counter("gateway_recombine_total", 1)
        return plaintext

    # ------------------------------------------------------------------
    # Ejection
    # ------------------------------------------------------------------

    def _process_ejections(self, stats: Json) -> None:
        queue: List[DataCommand] = self._ledger.list_ejections()
        set_gauge("gateway_ejection_pending", len(queue))
        for cmd in queue:
            try:
                receipt = self._eject_one(cmd)
            except IrisError as e:
                if isinstance(e, TransportError):
                    self._note_transport_failure(e)
                stats["eject_failed"] += 1
                inc_counter("gateway_eject_failed_total", 1)
                log_event(
                    log,
                    "eject_failed",
                    level=logging.WARNING,
                    command=cmd.to_ledger_obj(),
                    code=e.code,
                    reason=e.reason,
                )
                continue
            except Exception:
                stats["eject_failed"] += 1
                inc_counter("gateway_eject_failed_total", 1)
                log.exception("eject crashed command=%s", cmd.to_ledger_obj())
                continue

            if receipt is None:
                stats["deferred"] += 1
                inc_counter("gateway_eject_deferred_total", 1)
            elif receipt.get("applied"):
                stats["ejected"] += 1
                inc_counter("gateway_ejected_total", 1)
            else:
                stats["noop"] += 1

    def _eject_one(self, cmd: DataCommand) -> Optional[Json]:
        """Returns the ledger receipt, or None when the command is deferred."""
        if isinstance(cmd, CatBytes):
            md = self._ledger.metadata(cmd.asset_id)
            if md is None:
                return None
            self.cache.put(md.cid, self._store.fetch(md.cid))
            return self._ledger.submit_rpc_ready(
                self._sign("RPC_READY", {"command": cmd.to_ledger_obj(), "cid": md.cid})
            )

        if isinstance(cmd, AddBytes):
            mv = validate_multiaddr(cmd.multiaddress)
            if not mv.ok:
                raise TransportError("transport:bad_multiaddr", mv.reason, {"multiaddress": cmd.multiaddress})
            self._check_cid(cmd.cid)
            self._store.connect(mv.multiaddr)
            try:
                self._store.pin(cmd.cid)
            finally:
                try:
                    self._store.disconnect(mv.multiaddr)
                except TransportError as e:
                    log_event(log, "disconnect_failed", level=logging.DEBUG, multiaddress=mv.multiaddr, reason=e.reason)
            return self._ledger.submit_ejection_report(
                self._sign("PIN_RESULT", {"command": cmd.to_ledger_obj(), "pinned": True})
            )

        if isinstance(cmd, PinCID):
            self._check_cid(cmd.cid)
            self._store.pin(cmd.cid)
            return self._ledger.submit_ejection_report(
                self._sign("PIN_RESULT", {"command": cmd.to_ledger_obj(), "pinned": True})
            )

        if isinstance(cmd, AddToIndex):
            self._check_cid(cmd.cid)
            self._store.pin(cmd.cid)
            return self._ledger.submit_ejection_report(self._sign("INDEX_UPDATE", {"command": cmd.to_ledger_obj()}))

        raise TypeError(f"unsupported data command: {cmd!r}")

    def _check_cid(self, cid: str) -> None:
        cv = validate_ipfs_cid(cid, strict=bool(self._cfg.strict_cid))
        if not cv.ok:
            raise TransportError("transport:bad_cid", cv.reason, {"cid": cid})
