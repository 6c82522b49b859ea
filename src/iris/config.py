# src/iris/config.py
from __future__ import annotations

import os
from dataclasses import dataclass

from iris.env import load_dotenv_if_present


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    enabled: bool
    interval_ms: int

    # Tick gating (step runs when tick % N == 0)
    identity_every: int
    config_sync_every: int
    # 0 disables the periodic ejection queue reset
    ejection_reset_every: int

    # Content store
    ipfs_api_url: str
    ipfs_timeout_s: float
    strict_cid: bool
    retrieval_cache_max: int

    # Local node identity (hex secrets)
    account: str
    signing_key: str
    box_secret: str
    pre_secret: str

    # Ledger
    db_path: str
    initial_asset_id: int

    # Reliability knobs
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return bool(default)
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return float(default)


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def gateway_config_from_env(*, load_dotenv: bool = True) -> GatewayConfig:
    if load_dotenv:
        load_dotenv_if_present()

    interval_ms = max(100, _env_int("IRIS_TICK_INTERVAL_MS", 6_000))
    identity_every = max(1, _env_int("IRIS_IDENTITY_EVERY", 5))
    config_sync_every = max(1, _env_int("IRIS_CONFIG_SYNC_EVERY", 10))
    ejection_reset_every = max(0, _env_int("IRIS_EJECTION_RESET_EVERY", 0))

    fail_fast_after = max(3, _env_int("IRIS_GATEWAY_FAIL_FAST_AFTER", 10))
    error_backoff_min_ms = max(50, _env_int("IRIS_GATEWAY_ERROR_BACKOFF_MIN_MS", 250))
    error_backoff_max_ms = max(error_backoff_min_ms, _env_int("IRIS_GATEWAY_ERROR_BACKOFF_MAX_MS", 10_000))

    return GatewayConfig(
        enabled=_env_bool("IRIS_GATEWAY_ENABLED", True),
        interval_ms=int(interval_ms),
        identity_every=int(identity_every),
        config_sync_every=int(config_sync_every),
        ejection_reset_every=int(ejection_reset_every),
        ipfs_api_url=_env_str("IRIS_IPFS_API_URL", "http://127.0.0.1:5001"),
        ipfs_timeout_s=max(0.1, _env_float("IRIS_IPFS_TIMEOUT_S", 10.0)),
        strict_cid=_env_bool("IRIS_STRICT_CID", False),
        retrieval_cache_max=max(1, _env_int("IRIS_RETRIEVAL_CACHE_MAX", 256)),
        account=_env_str("IRIS_ACCOUNT"),
        signing_key=_env_str("IRIS_SIGNING_KEY"),
        box_secret=_env_str("IRIS_BOX_SECRET"),
        pre_secret=_env_str("IRIS_PRE_SECRET"),
        db_path=_env_str("IRIS_DB_PATH", "./data/iris.db"),
        initial_asset_id=max(0, _env_int("IRIS_INITIAL_ASSET_ID", 2)),
        fail_fast_after=int(fail_fast_after),
        error_backoff_min_ms=int(error_backoff_min_ms),
        error_backoff_max_ms=int(error_backoff_max_ms),
    )
