from __future__ import annotations

from dataclasses import replace
from typing import Tuple

from iris.config import gateway_config_from_env
from iris.crypto.proxy_reencrypt import delegate_all, encrypt
from iris.ledger.commands import IngestionCommand
from iris.ledger.data_assets import DataAssets
from iris.ledger.queues import genesis_state
from iris.ledger.registrar import AssetRegistrar, InMemoryAssetClasses
from iris.runtime import metrics
from iris.runtime.sqlite_db import MemoryLedgerStore
from iris.storage.gateway_worker import GatewayWorker
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


def _cmd(cid: str = "Qm123", owner: str = "alice", locator: str = LOCATOR) -> IngestionCommand:
    return IngestionCommand(owner=owner, cid=cid, multiaddress=locator, estimated_size=10, balance=1)


def test_plain_ingestion_scenario() -> None:
    worker, ledger, store = _mk_worker({"Qm123": b"hello world"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())

    stats = worker.tick(1)

    assert stats["ok"] is True
    assert stats["ingested"] == 1
    assert stats["ingest_failed"] == 0
    assert ledger.list_pending("gw1") == []
    md = ledger.metadata(2)
    assert md is not None
    assert md.cid == "Qm123"
    assert md.public_key is None

    assert ("connect", LOCATOR) in store.calls
    assert ("fetch", "Qm123") in store.calls
    assert ("disconnect", LOCATOR) in store.calls
    assert "Qm123" in store.pinned
    assert store.connected == set()
    assert worker.staged.get("Qm123") == b"hello world"


def test_asset_creation_feeds_shared_index_on_same_tick() -> None:
    worker, ledger, _ = _mk_worker({"Qm123": b"hello world"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())

    stats = worker.tick(1)

    assert stats["ejected"] == 1
    assert ledger.list_ejections() == []
    assert ledger.asset_index() == [2]
    assert ledger.pinners("Qm123") == ["gw1"]


def test_duplicate_enqueue_processed_into_one_asset() -> None:
    worker, ledger, _ = _mk_worker({"Qm123": b"hello world"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())

    stats = worker.tick(1)

    assert ledger.list_pending("gw1") == []
    assert ledger.metadata(2) is not None
    assert ledger.metadata(3) is None
    assert stats["ingested"] == 1
    assert stats["noop"] == 1


class _StagingDuringPinStore(MemoryContentStore):
    """Runs `on_pin` once, between the worker's fetch and its report."""

    def __init__(self, on_pin, **kw) -> None:
        super().__init__(**kw)
        self._on_pin = on_pin

    def pin(self, cid: str) -> None:
        super().pin(cid)
        hook, self._on_pin = self._on_pin, None
        if hook is not None:
            hook()


def test_staging_that_lands_mid_ingestion_is_not_bound_to_the_plain_asset() -> None:
    keys = deterministic_node_keys(account="gw1")
    res = encrypt(b"secret dataset", 3, 2, keys.pre.public)
    frags = delegate_all(res.artifacts, [keys.box.public] * 3)

    ledger = DataAssets(MemoryLedgerStore(genesis=genesis_state()), registrar=AssetRegistrar(InMemoryAssetClasses()))
    ledger.set_validator("gw1", keys.signing_pubkey)
    store = _StagingDuringPinStore(
        lambda: ledger.submit_encryption_artifacts(owner="alice", capsule=res.capsule, fragments={"gw1": frags}),
        blobs={"QmPlain": b"plain bytes", "QmEnc": res.ciphertext},
    )
    cfg = replace(gateway_config_from_env(load_dotenv=False), account="gw1", ejection_reset_every=0, strict_cid=False)
    worker = GatewayWorker(ledger=ledger, store=store, keys=keys, cfg=cfg)

    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmPlain"))
    stats = worker.tick(1)

    assert stats["ingested"] == 0
    assert ledger.list_pending("gw1") == [_cmd("QmPlain")]
    assert ledger.staged_public_key("alice") == res.public_key.hex()
    assert ledger.metadata(2) is None
    assert worker.staged.get("QmPlain") is None

    # The encrypted command claims the staged key; the plain one cannot decrypt
    # under it and waits until staging clears.
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmEnc"))
    stats = worker.tick(2)
    assert stats["ingested"] == 1
    assert stats["ingest_failed"] == 1
    md = ledger.metadata(2)
    assert md is not None and md.cid == "QmEnc" and md.public_key == res.public_key.hex()

    assert worker.tick(3)["ingested"] == 1
    md = ledger.metadata(3)
    assert md is not None and md.cid == "QmPlain" and md.public_key is None
    assert worker.staged.get("QmPlain") == b"plain bytes"
    assert worker.staged.get("QmEnc") == b"secret dataset"


def test_staged_dataset_is_recovered_before_reporting() -> None:
    metrics.reset()
    worker, ledger, store = _mk_worker({})
    keys = deterministic_node_keys(account="gw1")

    res = encrypt(b"secret dataset", 3, 2, keys.pre.public)
    frags = delegate_all(res.artifacts, [keys.box.public] * 3)
    ledger.submit_encryption_artifacts(owner="alice", capsule=res.capsule, fragments={"gw1": frags})
    store.blobs["QmEnc"] = res.ciphertext
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmEnc"))

    stats = worker.tick(1)

    assert stats["ingested"] == 1
    assert metrics.counter("gateway_recombine_total") == 1
    md = ledger.metadata(2)
    assert md is not None and md.public_key == res.public_key.hex()
    assert ledger.staged_public_key("alice") is None
    assert worker.staged.get("QmEnc") == b"secret dataset"
    assert "QmEnc" in store.pinned


def test_insufficient_fragments_keep_command_queued() -> None:
    worker, ledger, store = _mk_worker({})
    keys = deterministic_node_keys(account="gw1")

    res = encrypt(b"secret dataset", 3, 2, keys.pre.public)
    frags = delegate_all(res.artifacts, [keys.box.public])
    ledger.submit_encryption_artifacts(owner="alice", capsule=res.capsule, fragments={"gw1": frags})
    store.blobs["QmEnc"] = res.ciphertext
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmEnc"))

    stats = worker.tick(1)

    assert stats["ingested"] == 0
    assert stats["ingest_failed"] == 1
    assert ledger.list_pending("gw1") == [_cmd("QmEnc")]
    assert ledger.metadata(2) is None


def test_fetch_failure_is_isolated_per_command() -> None:
    worker, ledger, store = _mk_worker({"QmGood": b"ok"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmBad"))
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd("QmGood", owner="bob"))

    stats = worker.tick(1)

    assert stats["ingested"] == 1
    assert stats["ingest_failed"] == 1
    assert ledger.list_pending("gw1") == [_cmd("QmBad")]
    assert ("disconnect", LOCATOR) in store.calls
    assert store.connected == set()
    assert worker.staged.get("QmGood") == b"ok"
    assert worker.staged.get("QmBad") is None


def test_malformed_locator_never_reaches_the_daemon() -> None:
    worker, ledger, store = _mk_worker({"Qm123": b"x"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd(locator="/ip4/999.1.1.1/tcp/4001"))

    stats = worker.tick(1)

    assert stats["ingest_failed"] == 1
    assert not any(m == "connect" for m, _ in store.calls)
    assert len(ledger.list_pending("gw1")) == 1


def test_failed_command_retried_next_tick() -> None:
    worker, ledger, store = _mk_worker({"Qm123": b"x"})
    store.fail_pin.add("Qm123")
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())

    assert worker.tick(1)["ingest_failed"] == 1
    assert len(ledger.list_pending("gw1")) == 1

    store.fail_pin.clear()
    assert worker.tick(2)["ingested"] == 1
    assert ledger.list_pending("gw1") == []


def test_non_validator_does_not_ingest() -> None:
    worker, ledger, store = _mk_worker({"Qm123": b"x"})
    ledger.submit_ingestion_request(custodian="gw1", command=_cmd())
    keys = deterministic_node_keys(account="gw1")
    ledger.set_validator("gw1", keys.signing_pubkey, active=False)

    stats = worker.tick(1)

    assert stats["validator"] is False
    assert stats["ingested"] == 0
    assert not any(m == "fetch" for m, _ in store.calls)
    assert len(ledger.list_pending("gw1")) == 1
