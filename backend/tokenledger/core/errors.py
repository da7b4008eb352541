"""Typed ledger outcomes.

Every rejection a caller is expected to handle (billing prompt, upgrade
prompt, promo message) is a ``LedgerError`` subclass carrying a stable
``code`` and a user-facing message. The API layer maps them to JSON
responses via ``register_exception_handlers``.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class LedgerError(Exception):
    """Base class for expected, recoverable ledger outcomes."""

    code = "ledger_error"
    status_code = 400
    default_message = "Ledger operation rejected"

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.context:
            body.update(self.context)
        return body


class InsufficientBalanceError(LedgerError):
    code = "insufficient_balance"
    status_code = 402
    default_message = "Insufficient tokens, purchase more to continue"


class QuotaExceededError(LedgerError):
    code = "quota_exceeded"
    status_code = 403
    default_message = "AI query limit reached for your plan, upgrade to continue"


class ProviderNotAllowedError(LedgerError):
    code = "provider_not_allowed"
    status_code = 403
    default_message = "This AI provider is not included in your plan"


class PromoInvalidError(LedgerError):
    code = "promo_invalid"
    status_code = 400

    NOT_FOUND_OR_EXPIRED = "not_found_or_expired"
    MAX_USES_REACHED = "max_uses_reached"

    _messages = {
        NOT_FOUND_OR_EXPIRED: "Invalid or expired promo code",
        MAX_USES_REACHED: "Promo code has reached maximum uses",
    }

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or self._messages.get(reason, "Invalid promo code"), reason=reason)


class InvalidAmountError(LedgerError):
    code = "invalid_amount"
    status_code = 422
    default_message = "Amount is not valid for this operation"


class SubscriptionNotFoundError(LedgerError):
    code = "subscription_not_found"
    status_code = 404
    default_message = "Subscription not found for shop"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def _ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
