# src/iris/ledger/registrar.py
from __future__ import annotations

"""Result handler: turn a completed ingestion into a registered asset.

Finalization is idempotent per command fingerprint. A replayed finalize for the
same command returns the asset id recorded the first time and touches nothing
else, so a duplicate enqueue of one dataset yields exactly one asset.

Asset-class bookkeeping (mint/burn/transfer) lives behind AssetClassBackend.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from iris.ledger.commands import AddToIndex, IngestionCommand
from iris.ledger.queues import allocate_asset_id, enqueue_ejection, put_metadata
from iris.runtime.errors import BookkeepingError
from iris.runtime.metrics import inc_counter

Json = Dict[str, Any]

log = logging.getLogger("iris.registrar")


class AssetClassBackend(Protocol):
    def create(self, *, asset_id: int, owner: str, custodian: str, balance: int) -> None: ...


class ResultHandler(Protocol):
    def finalize(
        self,
        state: Json,
        *,
        custodian: str,
        command: IngestionCommand,
        public_key: Optional[str],
    ) -> Json: ...


class InMemoryAssetClasses:
    """Asset-class backend that keeps created classes in a dict.

    Set `fail_with` to make the next create() raise it (then it clears).
    """

    def __init__(self) -> None:
        self.created: Dict[int, Json] = {}
        self.fail_with: Optional[Exception] = None

    def create(self, *, asset_id: int, owner: str, custodian: str, balance: int) -> None:
        if self.fail_with is not None:
            err, self.fail_with = self.fail_with, None
            raise err
        if asset_id in self.created:
            raise BookkeepingError("bookkeeping", "asset_class_exists", {"asset_id": asset_id})
        self.created[asset_id] = {"owner": owner, "custodian": custodian, "balance": int(balance)}


class AssetRegistrar:
    def __init__(self, backend: AssetClassBackend) -> None:
        self._backend = backend

    def finalize(
        self,
        state: Json,
        *,
        custodian: str,
        command: IngestionCommand,
        public_key: Optional[str],
    ) -> Json:
        fp = command.fingerprint()
        finalized = state.get("finalized")
        if not isinstance(finalized, dict):
            finalized = {}
            state["finalized"] = finalized

        if fp in finalized:
            inc_counter("registrar_finalize_deduped_total", 1)
            return {"asset_id": int(finalized[fp]), "deduped": True, "fingerprint": fp}

        asset_id = allocate_asset_id(state)
        try:
            self._backend.create(asset_id=asset_id, owner=command.owner, custodian=custodian, balance=int(command.balance))
        except BookkeepingError:
            inc_counter("registrar_finalize_failed_total", 1)
            raise
        except Exception as e:
            inc_counter("registrar_finalize_failed_total", 1)
            raise BookkeepingError("bookkeeping", "asset_create_failed", {"asset_id": asset_id, "err": str(e)}) from e

        put_metadata(state, asset_id, cid=command.cid, public_key=public_key)
        finalized[fp] = asset_id
        enqueue_ejection(state, AddToIndex(asset_id=asset_id, cid=command.cid).to_ledger_obj())

        inc_counter("registrar_finalize_ok_total", 1)
        log.info("asset registered asset_id=%s owner=%s cid=%s", asset_id, command.owner, command.cid)
        return {"asset_id": asset_id, "deduped": False, "fingerprint": fp}
