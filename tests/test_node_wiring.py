from __future__ import annotations

import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from iris.config import gateway_config_from_env
from iris.ledger.commands import IngestionCommand
from iris.node import build_node
from iris.runtime import metrics
from iris.runtime.structured_logging import JsonLineFormatter, log_event
from iris.testing.fake_store import MemoryContentStore
from iris.testing.sigtools import deterministic_node_keys


def _cfg(tmp_path: Path):
    keys = deterministic_node_keys(account="gw1")
    return replace(
        gateway_config_from_env(load_dotenv=False),
        account="gw1",
        signing_key=keys.signing_key,
        box_secret=keys.box.secret.hex(),
        pre_secret=keys.pre.secret.hex(),
        db_path=str(tmp_path / "iris.db"),
        initial_asset_id=7,
    )


def test_build_node_runs_an_ingestion_against_sqlite(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    content = MemoryContentStore(blobs={"Qm123": b"payload"})
    node = build_node(cfg, content=content)

    assert node.worker.account == "gw1"
    node.ledger.set_validator("gw1", deterministic_node_keys(account="gw1").signing_pubkey)
    node.ledger.submit_ingestion_request(
        custodian="gw1",
        command=IngestionCommand(owner="alice", cid="Qm123", multiaddress="/ip4/1.2.3.4/tcp/4001", estimated_size=7, balance=1),
    )

    assert node.loop.run_tick() is True

    md = node.ledger.metadata(7)
    assert md is not None and md.cid == "Qm123"
    assert (tmp_path / "iris.db").exists()


def test_build_node_requires_account(tmp_path: Path) -> None:
    cfg = replace(_cfg(tmp_path), account="")
    with pytest.raises(ValueError):
        build_node(cfg, content=MemoryContentStore())


def test_log_event_emits_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("iris.test")
    with caplog.at_level(logging.INFO, logger="iris.test"):
        log_event(log, "ingest_failed", cid="Qm123", code="transport:unreachable")

    rec = json.loads(caplog.records[-1].getMessage())
    assert rec["event"] == "ingest_failed"
    assert rec["cid"] == "Qm123"
    assert isinstance(rec["ts_ms"], int)


def test_formatter_wraps_plain_records_and_tracebacks() -> None:
    fmt = JsonLineFormatter()
    try:
        raise RuntimeError("tick exploded")
    except RuntimeError:
        rec = logging.LogRecord("iris.gateway_loop", logging.ERROR, __file__, 1, "tick error n=%s", (3,), sys.exc_info())

    out = json.loads(fmt.format(rec))
    assert out["level"] == "ERROR"
    assert out["logger"] == "iris.gateway_loop"
    assert out["msg"] == "tick error n=3"
    assert "RuntimeError: tick exploded" in out["exc"]


def test_metrics_counters_and_prometheus_text() -> None:
    metrics.reset()
    metrics.inc_counter("gateway_ingested_total")
    metrics.inc_counter("gateway_ingested_total", 2)
    metrics.set_gauge("gateway_daemon_up", 1)
    metrics.inc_counter("  ")
    metrics.observe_ms("gateway_tick_ms", 12.7)
    metrics.observe_ms("gateway_tick_ms", 30)
    metrics.observe_ms("gateway_tick_ms", -5)

    assert metrics.counter("gateway_ingested_total") == 3
    assert metrics.gauge("gateway_daemon_up") == 1
    assert metrics.timing("gateway_tick_ms") == {"count": 3, "sum_ms": 42, "max_ms": 30}
    assert "  " not in metrics.snapshot()["counters"]

    text = metrics.format_prometheus()
    assert "iris_gateway_ingested_total 3\n" in text
    assert "iris_gateway_daemon_up 1\n" in text
    assert "iris_gateway_tick_ms_count 3\n" in text
    assert "iris_gateway_tick_ms_sum 42\n" in text
