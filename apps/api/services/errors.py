"""Ledger error taxonomy shared by webhook handlers and the request path."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class: every failure the ledger surfaces maps to one HTTP status."""

    code = "LEDGER_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = self.context
        return payload


class Unauthorized(LedgerError):
    code = "UNAUTHORIZED"
    status_code = 401


class MalformedEvent(LedgerError):
    code = "MALFORMED_EVENT"
    status_code = 400


class MalformedRequest(LedgerError):
    code = "MALFORMED_REQUEST"
    status_code = 400


class NotFound(LedgerError):
    """Retryable: the upstream sender should redeliver later."""

    code = "NOT_FOUND"
    status_code = 404
    retryable = True


class AccountNotFound(NotFound):
    code = "ACCOUNT_NOT_FOUND"


class RateLimited(LedgerError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(self, message: str, *, remaining: int = 0, reset_at: Optional[float] = None):
        super().__init__(message, context={"remaining": remaining, "reset_at": reset_at})
        self.remaining = remaining
        self.reset_at = reset_at


class InsufficientCredits(LedgerError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402


class InsufficientBalance(InsufficientCredits):
    """Raised by the store when a usage delta would drive the balance negative."""

    code = "INSUFFICIENT_BALANCE"


class DuplicateTransaction(LedgerError):
    """A ledger row with the same payment reference or generation/kind already exists."""

    code = "DUPLICATE_TRANSACTION"
    status_code = 409


class ProviderFailure(LedgerError):
    code = "PROVIDER_FAILURE"
    status_code = 502
    retryable = True
