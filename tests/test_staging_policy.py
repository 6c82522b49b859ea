from __future__ import annotations

import pytest

from iris.crypto.box import BoxKeyPair
from iris.crypto.proxy_reencrypt import PreKeyPair, delegate_all, encrypt
from iris.ledger.commands import IngestionCommand
from iris.ledger.data_assets import DataAssets
from iris.ledger.queues import genesis_state
from iris.ledger.registrar import AssetRegistrar, InMemoryAssetClasses
from iris.runtime.errors import LedgerError
from iris.runtime.sqlite_db import MemoryLedgerStore


def _ledger() -> DataAssets:
    return DataAssets(MemoryLedgerStore(genesis=genesis_state()), registrar=AssetRegistrar(InMemoryAssetClasses()))


def test_same_key_restaged_is_idempotent() -> None:
    ledger = _ledger()
    assert ledger.stage_result("alice", "aa" * 33)["deduped"] is False
    assert ledger.stage_result("alice", "aa" * 33)["deduped"] is True
    assert ledger.staged_public_key("alice") == "aa" * 33


def test_different_key_while_staged_is_a_conflict() -> None:
    ledger = _ledger()
    ledger.stage_result("alice", "aa" * 33)

    with pytest.raises(LedgerError) as ei:
        ledger.stage_result("alice", "bb" * 33)
    assert ei.value.reason == "owner_already_staged"
    assert ledger.staged_public_key("alice") == "aa" * 33


def test_take_staged_empties_the_slot() -> None:
    ledger = _ledger()
    ledger.stage_result("alice", "aa" * 33)

    assert ledger.take_staged("alice") == "aa" * 33
    assert ledger.take_staged("alice") is None
    ledger.stage_result("alice", "bb" * 33)
    assert ledger.staged_public_key("alice") == "bb" * 33


def test_staging_is_per_owner() -> None:
    ledger = _ledger()
    ledger.stage_result("alice", "aa" * 33)
    ledger.stage_result("bob", "bb" * 33)
    assert ledger.staged_public_key("alice") == "aa" * 33
    assert ledger.staged_public_key("bob") == "bb" * 33


def test_encryption_artifacts_stage_and_publish() -> None:
    ledger = _ledger()
    gw = BoxKeyPair.generate()
    res = encrypt(b"payload", 3, 2, PreKeyPair.generate().public)
    frags = delegate_all(res.artifacts, [gw.public, gw.public])

    out = ledger.submit_encryption_artifacts(owner="alice", capsule=res.capsule, fragments={"gw1": frags})

    pk_hex = res.public_key.hex()
    assert out["public_key"] == pk_hex
    assert ledger.staged_public_key("alice") == pk_hex
    assert ledger.capsule(pk_hex) == res.capsule
    assert ledger.fragments(pk_hex, "gw1") == frags
    assert ledger.fragments(pk_hex, "gw2") == []


def test_cancel_drops_staged_artifacts() -> None:
    ledger = _ledger()
    ledger.set_validator("gw1", "00" * 32)
    cmd = IngestionCommand(owner="alice", cid="QmX", multiaddress="/ip4/1.2.3.4/tcp/4001", estimated_size=1, balance=0)
    ledger.submit_ingestion_request(custodian="gw1", command=cmd)

    gw = BoxKeyPair.generate()
    res = encrypt(b"payload", 1, 1, PreKeyPair.generate().public)
    ledger.submit_encryption_artifacts(owner="alice", capsule=res.capsule, fragments={"gw1": delegate_all(res.artifacts, [gw.public])})

    out = ledger.cancel_request(owner="alice", custodian="gw1", command=cmd)
    assert out["unstaged"] is True
    assert ledger.capsule(res.public_key.hex()) is None
    assert ledger.fragments(res.public_key.hex(), "gw1") == []
