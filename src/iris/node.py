# src/iris/node.py
from __future__ import annotations

"""Wire one gateway node together from a GatewayConfig."""

import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from iris.config import GatewayConfig, gateway_config_from_env
from iris.env import loaded_dotenv_path
from iris.crypto.keys import NodeKeys
from iris.ledger.data_assets import DataAssets
from iris.ledger.queues import genesis_state
from iris.ledger.registrar import AssetClassBackend, AssetRegistrar, InMemoryAssetClasses
from iris.runtime.sqlite_db import LedgerStore, SqliteDB, SqliteLedgerStore
from iris.runtime.structured_logging import configure_structured_logging, log_event
from iris.storage.gateway_loop import GatewayLoop
from iris.storage.gateway_worker import GatewayWorker
from iris.storage.ipfs_client import ContentStore, KuboClient

log = logging.getLogger("iris.node")


@dataclass
class GatewayNode:
    cfg: GatewayConfig
    ledger: DataAssets
    worker: GatewayWorker
    loop: GatewayLoop


def build_node(
    cfg: GatewayConfig,
    *,
    store: Optional[LedgerStore] = None,
    content: Optional[ContentStore] = None,
    assets: Optional[AssetClassBackend] = None,
) -> GatewayNode:
    if store is None:
        store = SqliteLedgerStore(
            db=SqliteDB(path=cfg.db_path),
            genesis=genesis_state(initial_asset_id=cfg.initial_asset_id),
        )
    if content is None:
        content = KuboClient(cfg.ipfs_api_url, timeout_s=cfg.ipfs_timeout_s)

    ledger = DataAssets(store, registrar=AssetRegistrar(assets if assets is not None else InMemoryAssetClasses()))
    keys = NodeKeys.from_hex(
        account=cfg.account,
        signing_key=cfg.signing_key,
        box_secret=cfg.box_secret,
        pre_secret=cfg.pre_secret,
    )
    worker = GatewayWorker(ledger=ledger, store=content, keys=keys, cfg=cfg)
    return GatewayNode(cfg=cfg, ledger=ledger, worker=worker, loop=GatewayLoop(worker=worker, cfg=cfg))


def main() -> int:
    configure_structured_logging()
    cfg = gateway_config_from_env()
    if not cfg.account:
        log.error("IRIS_ACCOUNT is required")
        return 2

    node = build_node(cfg)
    done = threading.Event()

    def _on_signal(signum: int, _frame: object) -> None:
        done.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    if not node.loop.start():
        log.error("gateway loop disabled (IRIS_GATEWAY_ENABLED=0)")
        return 1
    log_event(log, "gateway_started", account=cfg.account, interval_ms=cfg.interval_ms, dotenv=loaded_dotenv_path())

    while not done.wait(1.0):
        if node.loop.unhealthy:
            break
    node.loop.stop()
    return 1 if node.loop.unhealthy else 0


if __name__ == "__main__":
    raise SystemExit(main())
