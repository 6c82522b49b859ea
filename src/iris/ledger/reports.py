# src/iris/ledger/reports.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from iris.crypto.sig import canonical_report_message, sign_ed25519, verify_ed25519_signature
from iris.runtime.errors import AuthorizationError

Json = Dict[str, Any]


@dataclass(frozen=True)
class Report:
    """Signed worker -> ledger message.

    The signature covers canonical_report_message(kind, reporter, nonce, payload);
    the reporter's key is looked up in the ledger's validator registry.
    """

    kind: str
    reporter: str
    nonce: int
    payload: Json
    sig: str

    def message(self) -> bytes:
        return canonical_report_message(kind=self.kind, reporter=self.reporter, nonce=self.nonce, payload=self.payload)

    def to_json(self) -> Json:
        return {"kind": self.kind, "reporter": self.reporter, "nonce": int(self.nonce), "payload": self.payload, "sig": self.sig}


def sign_report(*, kind: str, reporter: str, nonce: int, payload: Json, privkey: str) -> Report:
    msg = canonical_report_message(kind=kind, reporter=reporter, nonce=nonce, payload=payload)
    return Report(kind=str(kind), reporter=str(reporter), nonce=int(nonce), payload=payload, sig=sign_ed25519(message=msg, privkey=privkey))


def verify_report(state: Json, report: Report, *, require_active: bool = True) -> None:
    """Raise AuthorizationError unless `report` is signed by its reporter's registered key."""
    validators = state.get("validators")
    rec = validators.get(report.reporter) if isinstance(validators, dict) else None
    if not isinstance(rec, dict):
        raise AuthorizationError("auth:unknown_reporter", "reporter_not_registered", {"reporter": report.reporter})
    if require_active and not bool(rec.get("active", False)):
        raise AuthorizationError("auth:inactive_reporter", "reporter_not_active_validator", {"reporter": report.reporter})

    pubkey = rec.get("pubkey")
    if not isinstance(pubkey, str) or not pubkey.strip():
        raise AuthorizationError("auth:no_pubkey", "reporter_has_no_pubkey", {"reporter": report.reporter})

    if not verify_ed25519_signature(message=report.message(), sig=report.sig, pubkey=pubkey):
        raise AuthorizationError("auth:bad_signature", "report_signature_invalid", {"reporter": report.reporter, "kind": report.kind})
