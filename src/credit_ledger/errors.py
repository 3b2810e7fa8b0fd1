from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class CreditLedgerError(Exception):
    """
    Base class for every user-visible rejection raised by the ledger.

    `code` is a stable machine-readable identifier; `http_status` is what
    the API layer answers with.
    """

    code: str = "CREDIT_LEDGER_ERROR"
    http_status: int = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        return payload


class InsufficientBalance(CreditLedgerError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 402


class AccountBanned(CreditLedgerError):
    code = "ACCOUNT_BANNED"
    http_status = 403


class CodeNotFound(CreditLedgerError):
    code = "CODE_NOT_FOUND"
    http_status = 404


class AlreadyUsed(CreditLedgerError):
    code = "ALREADY_USED"
    http_status = 409


class Exhausted(CreditLedgerError):
    code = "EXHAUSTED"
    http_status = 410


class QuotaExceeded(CreditLedgerError):
    code = "QUOTA_EXCEEDED"
    http_status = 429


class CooldownActive(CreditLedgerError):
    code = "COOLDOWN_ACTIVE"
    http_status = 429

    def __init__(self, message: str, retry_after: Optional[datetime] = None, **details: Any) -> None:
        super().__init__(message, retry_after=retry_after, **details)
        self.retry_after = retry_after


class Conflict(CreditLedgerError):
    """Optimistic retry budget exhausted."""

    code = "CONFLICT"
    http_status = 409


class StorageUnavailable(CreditLedgerError):
    code = "STORAGE_UNAVAILABLE"
    http_status = 503


class AdNotFound(CreditLedgerError):
    code = "AD_NOT_FOUND"
    http_status = 404


class AdViewNotFound(CreditLedgerError):
    code = "AD_VIEW_NOT_FOUND"
    http_status = 404


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value
