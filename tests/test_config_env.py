from __future__ import annotations

import os
from pathlib import Path

import pytest

from iris.config import gateway_config_from_env
from iris.env import load_dotenv_if_present, loaded_dotenv_path, reset_dotenv_state


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for k in list(os.environ):
        if k.startswith("IRIS_"):
            monkeypatch.delenv(k, raising=False)
    reset_dotenv_state()
    yield
    reset_dotenv_state()


def test_defaults() -> None:
    cfg = gateway_config_from_env(load_dotenv=False)
    assert cfg.identity_every == 5
    assert cfg.config_sync_every == 10
    assert cfg.ejection_reset_every == 0
    assert cfg.initial_asset_id == 2
    assert cfg.strict_cid is False
    assert cfg.ipfs_api_url == "http://127.0.0.1:5001"


def test_env_overrides_and_clamps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IRIS_IDENTITY_EVERY", "0")
    monkeypatch.setenv("IRIS_CONFIG_SYNC_EVERY", "3")
    monkeypatch.setenv("IRIS_EJECTION_RESET_EVERY", "-7")
    monkeypatch.setenv("IRIS_TICK_INTERVAL_MS", "5")
    monkeypatch.setenv("IRIS_STRICT_CID", "yes")
    monkeypatch.setenv("IRIS_GATEWAY_FAIL_FAST_AFTER", "not-a-number")

    cfg = gateway_config_from_env(load_dotenv=False)
    assert cfg.identity_every == 1
    assert cfg.config_sync_every == 3
    assert cfg.ejection_reset_every == 0
    assert cfg.interval_ms == 100
    assert cfg.strict_cid is True
    assert cfg.fail_fast_after == 10


def test_dotenv_file_is_loaded_once_without_overriding(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / "node.env"
    env_file.write_text("IRIS_ACCOUNT=gw-from-file\nIRIS_IPFS_API_URL=http://10.0.0.5:5001\n", encoding="utf-8")
    monkeypatch.setenv("IRIS_DOTENV_PATH", str(env_file))
    monkeypatch.setenv("IRIS_IPFS_API_URL", "http://127.0.0.1:5999")

    cfg = gateway_config_from_env()
    assert cfg.account == "gw-from-file"
    assert cfg.ipfs_api_url == "http://127.0.0.1:5999"
    assert loaded_dotenv_path() == str(env_file)

    os.environ.pop("IRIS_ACCOUNT", None)
    assert load_dotenv_if_present() is False


def test_missing_dotenv_is_fine(tmp_path: Path) -> None:
    assert load_dotenv_if_present(str(tmp_path / "absent.env")) is False
    assert loaded_dotenv_path() is None
