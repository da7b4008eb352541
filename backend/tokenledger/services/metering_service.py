"""Metered AI call: quota gate, token reservation, reconciliation.

Wraps one variable-cost provider call. The shop's quota and plan vendor
are checked first, then the padded estimate is reserved, the call runs,
and the reservation is finalized with the usage the provider reported.
A failed call releases the reservation and does not count against the
quota.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.services import ledger_service, quota_service
from tokenledger.services.ledger_service import FinalizeResult
from tokenledger.services.token_pricing import estimate_with_margin

logger = structlog.get_logger()


@dataclass(frozen=True)
class MeteredResult:
    value: Any
    tokens_used: int
    reservation: FinalizeResult
    query_count: int


_USAGE_KEYS = (
    "totalTokens",
    "total_tokens",
    "promptTokens",
    "prompt_tokens",
    "completionTokens",
    "completion_tokens",
)


def usage_total_tokens(response: Any) -> int:
    """Total tokens from a provider response's ``usage`` block (0 when absent)."""
    if isinstance(response, dict):
        usage = response.get("usage") or {}
    else:
        usage = getattr(response, "usage", None) or {}
    if not isinstance(usage, dict):
        usage = {key: getattr(usage, key, None) for key in _USAGE_KEYS}

    total = _first_present(usage, "totalTokens", "total_tokens")
    if total is not None:
        return int(total)

    prompt = _first_present(usage, "promptTokens", "prompt_tokens") or 0
    completion = _first_present(usage, "completionTokens", "completion_tokens") or 0
    return int(prompt) + int(completion)


def _first_present(usage: dict, *keys: str) -> Any:
    for key in keys:
        if usage.get(key) is not None:
            return usage[key]
    return None


async def metered_call(
    db: AsyncSession,
    shop: str,
    feature: str,
    estimated_tokens: int,
    call: Callable[[], Awaitable[Any]],
    provider: str | None = None,
    request_key: str | None = None,
    usage_extractor: Callable[[Any], int] = usage_total_tokens,
    metadata: dict | None = None,
) -> MeteredResult:
    """Run ``call`` under the quota gate and a token reservation.

    Raises ``QuotaExceededError`` / ``ProviderNotAllowedError`` before
    anything is reserved and ``InsufficientBalanceError`` before the call
    is made.
    """
    await quota_service.enforce(db, shop, provider=provider)

    reservation_id = await ledger_service.reserve(
        db,
        shop,
        estimate_with_margin(estimated_tokens),
        feature,
        metadata={**(metadata or {}), "provider": provider} if provider else metadata,
    )

    try:
        value = await call()
        tokens_used = usage_extractor(value)
    except BaseException:
        # Includes CancelledError: the hold is released before propagating
        logger.warning("metering.call_failed", shop=shop, feature=feature, reservation_id=str(reservation_id))
        await ledger_service.cancel(db, shop, reservation_id)
        raise

    reservation = await ledger_service.finalize(db, shop, reservation_id, tokens_used)
    query_count = await quota_service.consume(db, shop, request_key=request_key)

    logger.info(
        "metering.call_completed",
        shop=shop,
        feature=feature,
        tokens_used=tokens_used,
        refunded=reservation.refunded_amount,
        query_count=query_count,
    )
    return MeteredResult(
        value=value,
        tokens_used=tokens_used,
        reservation=reservation,
        query_count=query_count,
    )
