# src/iris/ledger/command_schema.py
from __future__ import annotations

"""Request and report payload schemas.

Shape checks only: types, required keys, unknown keys rejected. Ledger code still
enforces semantics (pending-ness, staging policy, signatures).
"""

from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from iris.runtime.errors import LedgerError

Json = Dict[str, Any]


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys and silent type coercion."""

    model_config = ConfigDict(extra="forbid", strict=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class IngestionCommandModel(_StrictModel):
    owner: str = Field(..., min_length=1)
    cid: str = Field(..., min_length=1)
    multiaddress: str = Field(..., min_length=1)
    estimated_size: int = Field(..., ge=0)
    balance: int = Field(..., ge=0)


class AddBytesModel(_StrictModel):
    type: Literal["AddBytes"]
    owner: str = Field(..., min_length=1)
    cid: str = Field(..., min_length=1)
    multiaddress: str = Field(..., min_length=1)


class CatBytesModel(_StrictModel):
    type: Literal["CatBytes"]
    requester: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    asset_id: int = Field(..., ge=0)


class PinCIDModel(_StrictModel):
    type: Literal["PinCID"]
    cid: str = Field(..., min_length=1)


class AddToIndexModel(_StrictModel):
    type: Literal["AddToIndex"]
    asset_id: int = Field(..., ge=0)
    cid: str = Field(..., min_length=1)


DataCommandModel = Union[AddBytesModel, CatBytesModel, PinCIDModel, AddToIndexModel]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class IngestionRequestPayload(_StrictModel):
    custodian: str = Field(..., min_length=1)
    command: IngestionCommandModel


class EjectionRequestPayload(_StrictModel):
    command: DataCommandModel = Field(..., discriminator="type")


class CapsulePayload(_StrictModel):
    data_capsule: str = Field(..., min_length=1)
    sk_capsule: str = Field(..., min_length=1)
    sk_ciphertext: str = Field(..., min_length=1)
    public_key: str = Field(..., min_length=1)
    verifying_key: str = Field(..., min_length=1)
    receiving_key: str = Field(..., min_length=1)
    threshold: int = Field(..., ge=1)
    shares: int = Field(..., ge=1)


class EncryptedFragmentPayload(_StrictModel):
    public_key: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1)
    ciphertext: str = Field(..., min_length=1)


class EncryptionArtifactsPayload(_StrictModel):
    owner: str = Field(..., min_length=1)
    capsule: CapsulePayload
    fragments: Dict[str, List[EncryptedFragmentPayload]]


# ---------------------------------------------------------------------------
# Signed reports (worker -> ledger)
# ---------------------------------------------------------------------------


class CompletionReportPayload(_StrictModel):
    custodian: str = Field(..., min_length=1)
    command: IngestionCommandModel
    # Staged key the artifact was decrypted under; None for plain datasets.
    public_key: Optional[str] = None


class RpcReadyPayload(_StrictModel):
    command: CatBytesModel
    cid: str = Field(..., min_length=1)


class PinResultPayload(_StrictModel):
    command: Union[AddBytesModel, PinCIDModel] = Field(..., discriminator="type")
    pinned: bool


class IndexUpdatePayload(_StrictModel):
    command: AddToIndexModel


class IdentityPayload(_StrictModel):
    public_key: str = Field(..., min_length=1)
    addresses: List[str] = Field(default_factory=list)


class UsageReportPayload(_StrictModel):
    used_bytes: int = Field(..., ge=0)
    max_bytes: int = Field(..., ge=0)
    num_objects: Optional[int] = Field(default=None, ge=0)


Schema = Type[_StrictModel]

_SCHEMA_BY_KIND: Dict[str, Schema] = {
    # Requests
    "INGESTION_REQUEST": IngestionRequestPayload,
    "EJECTION_REQUEST": EjectionRequestPayload,
    "ENCRYPTION_ARTIFACTS": EncryptionArtifactsPayload,
    # Reports
    "INGESTION_COMPLETE": CompletionReportPayload,
    "RPC_READY": RpcReadyPayload,
    "PIN_RESULT": PinResultPayload,
    "INDEX_UPDATE": IndexUpdatePayload,
    "IDENTITY": IdentityPayload,
    "USAGE": UsageReportPayload,
}

REPORT_KINDS = ("INGESTION_COMPLETE", "RPC_READY", "PIN_RESULT", "INDEX_UPDATE", "IDENTITY", "USAGE")


def validate_payload(kind: str, payload: Any) -> Json:
    """Validate `payload` for `kind` and return it as plain JSON.

    Raises LedgerError on unknown kinds and shape mismatches.
    """
    k = str(kind or "").strip().upper()
    sch = _SCHEMA_BY_KIND.get(k)
    if sch is None:
        raise LedgerError("schema:unknown_kind", "unknown_payload_kind", {"kind": k})
    if not isinstance(payload, dict):
        raise LedgerError("schema:payload_not_object", "payload_must_be_object", {"kind": k})
    try:
        return sch.model_validate(payload).model_dump(mode="json")
    except ValidationError as ve:
        raise LedgerError(
            "schema:validation_error",
            "payload_schema_mismatch",
            {"kind": k, "errors": ve.errors(include_url=False, include_context=False)},
        ) from ve
