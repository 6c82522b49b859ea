from __future__ import annotations

from dataclasses import replace
from typing import Tuple

from iris.config import gateway_config_from_env
from iris.ledger.commands import AddBytes, CatBytes, IngestionCommand, PinCID
from iris.ledger.data_assets import DataAssets
from iris.ledger.queues import genesis_state
from iris.ledger.registrar import AssetRegistrar, InMemoryAssetClasses
from iris.ledger.reports import sign_report
from iris.runtime.sqlite_db import MemoryLedgerStore
from iris.storage.gateway_worker import GatewayWorker, RetrievalCache
from iris.testing.fake_store import MemoryContentStore
from iris.testing.sigtools import deterministic_node_keys

LOCATOR = "/ip4/1.2.3.4/tcp/4001/p2p/Node1"


def _mk_worker(blobs: dict, **cfg_over) -> Tuple[GatewayWorker, DataAssets, MemoryContentStore]:
    ledger = DataAssets(MemoryLedgerStore(genesis=genesis_state()), registrar=AssetRegistrar(InMemoryAssetClasses()))
    keys = deterministic_node_keys(account="gw1")
    ledger.set_validator("gw1", keys.signing_pubkey)
    store = MemoryContentStore(blobs=blobs)
    opts = dict(account="gw1", identity_every=5, config_sync_every=10, ejection_reset_every=0, strict_cid=False)
    opts.update(cfg_over)
    cfg = replace(gateway_config_from_env(load_dotenv=False), **opts)
    return GatewayWorker(ledger=ledger, store=store, keys=keys, cfg=cfg), ledger, store


def _ingest(worker: GatewayWorker, ledger: DataAssets, cid: str = "Qm123") -> int:
    cmd = IngestionCommand(owner="alice", cid=cid, multiaddress=LOCATOR, estimated_size=10, balance=1)
    ledger.submit_ingestion_request(custodian="gw1", command=cmd)
    worker.tick(1)
    md = ledger.metadata(2)
    assert md is not None and md.cid == cid
    return 2


def test_release_caches_content_and_reports_ready() -> None:
    worker, ledger, store = _mk_worker({"Qm123": b"dataset bytes"})
    asset_id = _ingest(worker, ledger)
    ledger.request_release(requester="bob", owner="alice", asset_id=asset_id)

    stats = worker.tick(2)

    assert stats["ejected"] == 1
    assert worker.cache.get("Qm123") == b"dataset bytes"
    assert ledger.rpc_ready_nodes(asset_id) == ["gw1"]
    assert ledger.list_ejections() == []


def test_release_without_metadata_is_deferred_not_dropped() -> None:
    worker, ledger, store = _mk_worker({})
    ledger.request_release(requester="bob", owner="alice", asset_id=42)

    for n in range(1, 25):
        stats = worker.tick(n)
        assert stats["deferred"] == 1

    assert ledger.list_ejections() == [CatBytes(requester="bob", owner="alice", asset_id=42)]
    assert not any(m == "fetch" for m, _ in store.calls)


def test_deferred_release_completes_once_asset_exists() -> None:
    worker, ledger, _ = _mk_worker({"Qm123": b"dataset bytes"})
    ledger.request_release(requester="bob", owner="alice", asset_id=2)

    stats = worker.tick(0)
    # Ingestion runs before ejection within a tick, but nothing is queued yet.
    assert stats["deferred"] == 1

    _ingest(worker, ledger)
    assert ledger.rpc_ready_nodes(2) == ["gw1"]
    assert ledger.list_ejections() == []


def test_pin_cid_records_pinner() -> None:
    worker, ledger, store = _mk_worker({})
    ledger.submit_ejection_request(PinCID(cid="QmPin"))

    stats = worker.tick(1)

    assert stats["ejected"] == 1
    assert "QmPin" in store.pinned
    assert ledger.pinners("QmPin") == ["gw1"]
    assert ledger.list_ejections() == []


def test_add_bytes_connects_pins_and_disconnects() -> None:
    worker, ledger, store = _mk_worker({})
    ledger.submit_ejection_request(AddBytes(owner="alice", cid="QmAdd", multiaddress=LOCATOR))

    stats = worker.tick(1)

    assert stats["ejected"] == 1
    assert [c for c in store.calls if c[0] in {"connect", "pin", "disconnect"}] == [
        ("connect", LOCATOR),
        ("pin", "QmAdd"),
        ("disconnect", LOCATOR),
    ]
    assert ledger.pinners("QmAdd") == ["gw1"]


def test_pin_failure_keeps_entry_for_next_tick() -> None:
    worker, ledger, store = _mk_worker({})
    store.fail_pin.add("QmPin")
    ledger.submit_ejection_request(PinCID(cid="QmPin"))

    assert worker.tick(1)["eject_failed"] == 1
    assert ledger.list_ejections() == [PinCID(cid="QmPin")]

    store.fail_pin.clear()
    assert worker.tick(2)["ejected"] == 1
    assert ledger.list_ejections() == []


def test_ejection_queue_not_cleared_by_default() -> None:
    worker, ledger, _ = _mk_worker({})
    ledger.request_release(requester="bob", owner="alice", asset_id=99)

    for n in range(1, 101):
        assert worker.tick(n)["reset"] == 0
    assert len(ledger.list_ejections()) == 1


def test_opt_in_periodic_reset_drains_queue() -> None:
    worker, ledger, _ = _mk_worker({}, ejection_reset_every=3)
    ledger.request_release(requester="bob", owner="alice", asset_id=99)

    assert worker.tick(1)["reset"] == 0
    assert worker.tick(2)["reset"] == 0
    assert worker.tick(3)["reset"] == 1
    assert ledger.list_ejections() == []


def test_stale_ejection_report_is_a_noop() -> None:
    worker, ledger, _ = _mk_worker({})
    keys = deterministic_node_keys(account="gw1")
    ledger.submit_ejection_request(PinCID(cid="QmPin"))

    def rep(nonce: int):
        return sign_report(
            kind="PIN_RESULT",
            reporter="gw1",
            nonce=nonce,
            payload={"command": PinCID(cid="QmPin").to_ledger_obj(), "pinned": True},
            privkey=keys.signing_key,
        )

    assert ledger.submit_ejection_report(rep(1))["applied"] == "PIN_RESULT"
    again = ledger.submit_ejection_report(rep(2))
    assert again["applied"] is False
    assert again["reason"] == "not_pending"


def test_retrieval_cache_is_bounded_lru() -> None:
    cache = RetrievalCache(max_items=2)
    cache.put("a", b"1")
    cache.put("b", b"2")
    assert cache.get("a") == b"1"
    cache.put("c", b"3")

    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2
