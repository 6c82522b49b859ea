from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class IrisError(Exception):
    """Canonical error type for ledger, transport and crypto failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class TransportError(IrisError):
    """Content store unreachable, timed out, or handed a malformed cid/locator."""


class AuthorizationError(IrisError):
    """Report signature or reporter identity did not check out."""


class LedgerError(IrisError):
    """Malformed request or a request that conflicts with ledger state."""


class BookkeepingError(IrisError):
    """The asset registrar refused to finalize a command."""


class CryptoError(IrisError):
    pass


class FragmentDecryptionError(CryptoError):
    pass


class FragmentVerificationError(CryptoError):
    pass


class InsufficientFragmentsError(CryptoError):
    pass


class DecryptionError(CryptoError):
    pass
