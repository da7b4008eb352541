"""Token ledger: reservations, immediate deductions and purchases.

Every balance mutation is one transaction on the account row. Debits are
expressed as a single conditional UPDATE (``balance >= :amount``) so the
check and the mutation cannot be split by a concurrent request.
Reservation finalization first claims the usage entry with a conditional
``reserved -> finalized`` UPDATE, then adjusts the account under a row lock
in the same transaction.

Each public coroutine commits its own work; callers must not hold
uncommitted changes on the session they pass in.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.config import settings
from tokenledger.core.errors import InsufficientBalanceError, InvalidAmountError
from tokenledger.models.base import utcnow
from tokenledger.models.token_account import (
    RESERVATION_FINALIZED,
    RESERVATION_RESERVED,
    TokenAccount,
    TokenPurchase,
    TokenUsageEntry,
)
from tokenledger.services.token_pricing import split_revenue

logger = structlog.get_logger()


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of reconciling a reservation against actual usage."""

    reservation_id: uuid.UUID
    found: bool
    already_finalized: bool = False
    estimated_amount: int = 0
    actual_tokens_used: int = 0
    refunded_amount: int = 0
    extra_deducted: int = 0
    shortfall: int = 0
    balance: int | None = None

    @property
    def needs_reconciliation(self) -> bool:
        return self.shortfall > 0


# --- Ledger store ---


async def _find_account(db: AsyncSession, shop: str) -> TokenAccount | None:
    result = await db.execute(
        select(TokenAccount)
        .where(TokenAccount.shop == shop)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create(db: AsyncSession, shop: str) -> TokenAccount:
    """Return the shop's account, creating an empty one on first access."""
    account = await _find_account(db, shop)
    if account is not None:
        return account

    db.add(TokenAccount(shop=shop, balance=0, total_purchased=0, total_used=0))
    try:
        await db.commit()
    except IntegrityError:
        # Lost the race against a concurrent first access
        await db.rollback()
    else:
        logger.info("ledger.account_created", shop=shop)

    account = await _find_account(db, shop)
    if account is None:
        raise RuntimeError(f"token account for {shop} vanished after creation")
    return account


def has_sufficient_balance(account: TokenAccount, amount: int) -> bool:
    return amount <= account.balance


async def _current_balance(db: AsyncSession, account_id: uuid.UUID) -> int:
    result = await db.execute(select(TokenAccount.balance).where(TokenAccount.id == account_id))
    return result.scalar_one()


async def _debit(db: AsyncSession, account_id: uuid.UUID, amount: int, count_as_used: bool) -> int | None:
    """Conditionally take ``amount`` from the balance. Returns the new balance or None."""
    values = {"balance": TokenAccount.balance - amount}
    if count_as_used:
        values["total_used"] = TokenAccount.total_used + amount
    result = await db.execute(
        update(TokenAccount)
        .where(TokenAccount.id == account_id, TokenAccount.balance >= amount)
        .values(**values)
        .returning(TokenAccount.balance)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


# --- Reservation manager ---


async def reserve(
    db: AsyncSession,
    shop: str,
    estimated_amount: int,
    feature: str,
    metadata: dict | None = None,
    related_entity_id: str | None = None,
) -> uuid.UUID:
    """Hold ``estimated_amount`` tokens before a variable-cost operation.

    ``estimated_amount`` is expected to already include the safety margin
    (see ``token_pricing.estimate_with_margin``). Raises
    ``InsufficientBalanceError`` without touching the balance when the
    account cannot cover it.
    """
    if estimated_amount <= 0:
        raise InvalidAmountError("Reservation amount must be positive", amount=estimated_amount)

    account = await get_or_create(db, shop)
    account_id = account.id

    new_balance = await _debit(db, account_id, estimated_amount, count_as_used=False)
    if new_balance is None:
        await db.rollback()
        balance = await _current_balance(db, account_id)
        logger.info(
            "ledger.reserve_rejected",
            shop=shop,
            feature=feature,
            required=estimated_amount,
            balance=balance,
        )
        raise InsufficientBalanceError(required=estimated_amount, balance=balance)

    reservation_id = uuid.uuid4()
    db.add(
        TokenUsageEntry(
            account_id=account_id,
            feature=feature,
            tokens_used=estimated_amount,
            related_entity_id=related_entity_id,
            metadata_=metadata or {},
            reservation_id=reservation_id,
            status=RESERVATION_RESERVED,
            estimated_amount=estimated_amount,
        )
    )
    await db.commit()

    logger.info(
        "ledger.reserved",
        shop=shop,
        feature=feature,
        reservation_id=str(reservation_id),
        estimated_amount=estimated_amount,
        balance=new_balance,
    )
    return reservation_id


async def finalize(
    db: AsyncSession,
    shop: str,
    reservation_id: uuid.UUID,
    actual_tokens_used: int,
) -> FinalizeResult:
    """Reconcile a reservation with the real token usage.

    Under-use is refunded. Over-use is deducted, capped at the current
    balance; the uncharged remainder is stored on the entry as
    ``reconciliation_shortfall`` and logged. An unknown or already
    finalized reservation is a logged no-op so the caller's primary
    operation can still complete.
    """
    if actual_tokens_used < 0:
        raise InvalidAmountError("Actual usage must not be negative", amount=actual_tokens_used)

    account = await _find_account(db, shop)
    if account is None:
        logger.warning("ledger.reservation_not_found", shop=shop, reservation_id=str(reservation_id))
        return FinalizeResult(reservation_id=reservation_id, found=False)
    account_id = account.id

    now = utcnow()
    claim = await db.execute(
        update(TokenUsageEntry)
        .where(
            TokenUsageEntry.account_id == account_id,
            TokenUsageEntry.reservation_id == reservation_id,
            TokenUsageEntry.status == RESERVATION_RESERVED,
        )
        .values(
            status=RESERVATION_FINALIZED,
            tokens_used=actual_tokens_used,
            actual_tokens_used=actual_tokens_used,
            finalized_at=now,
            updated_at=now,
        )
        .returning(TokenUsageEntry.id, TokenUsageEntry.estimated_amount)
        .execution_options(synchronize_session=False)
    )
    claimed = claim.one_or_none()

    if claimed is None:
        await db.rollback()
        return await _reservation_miss(db, shop, account_id, reservation_id)

    entry_id, estimated = claimed
    estimated = estimated or 0

    locked = await db.execute(
        select(TokenAccount)
        .where(TokenAccount.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = locked.scalar_one()

    difference = estimated - actual_tokens_used
    refunded = 0
    extra = 0
    shortfall = 0

    if difference > 0:
        refunded = difference
        account.balance += refunded
    elif difference < 0:
        overage = -difference
        extra = min(overage, account.balance)
        shortfall = overage - extra
        account.balance -= extra

    account.total_used += actual_tokens_used

    await db.execute(
        update(TokenUsageEntry)
        .where(TokenUsageEntry.id == entry_id)
        .values(refunded_amount=refunded, reconciliation_shortfall=shortfall or None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if shortfall:
        logger.warning(
            "ledger.reconciliation_shortfall",
            shop=shop,
            reservation_id=str(reservation_id),
            estimated_amount=estimated,
            actual_tokens_used=actual_tokens_used,
            charged=extra,
            shortfall=shortfall,
        )
    elif extra:
        logger.warning(
            "ledger.finalize_overage",
            shop=shop,
            reservation_id=str(reservation_id),
            extra_deducted=extra,
        )

    logger.info(
        "ledger.finalized",
        shop=shop,
        reservation_id=str(reservation_id),
        estimated_amount=estimated,
        actual_tokens_used=actual_tokens_used,
        refunded=refunded,
        balance=account.balance,
    )
    return FinalizeResult(
        reservation_id=reservation_id,
        found=True,
        estimated_amount=estimated,
        actual_tokens_used=actual_tokens_used,
        refunded_amount=refunded,
        extra_deducted=extra,
        shortfall=shortfall,
        balance=account.balance,
    )


async def _reservation_miss(
    db: AsyncSession,
    shop: str,
    account_id: uuid.UUID,
    reservation_id: uuid.UUID,
) -> FinalizeResult:
    result = await db.execute(
        select(TokenUsageEntry.status).where(
            TokenUsageEntry.account_id == account_id,
            TokenUsageEntry.reservation_id == reservation_id,
        )
    )
    status = result.scalar_one_or_none()
    already_finalized = status == RESERVATION_FINALIZED
    balance = await _current_balance(db, account_id)

    if already_finalized:
        logger.info("ledger.reservation_already_finalized", shop=shop, reservation_id=str(reservation_id))
    else:
        logger.warning("ledger.reservation_not_found", shop=shop, reservation_id=str(reservation_id))

    return FinalizeResult(
        reservation_id=reservation_id,
        found=False,
        already_finalized=already_finalized,
        balance=balance,
    )


async def cancel(db: AsyncSession, shop: str, reservation_id: uuid.UUID) -> FinalizeResult:
    """Release a reservation whose operation never completed (full refund)."""
    result = await finalize(db, shop, reservation_id, 0)
    if result.found:
        logger.info(
            "ledger.reservation_cancelled",
            shop=shop,
            reservation_id=str(reservation_id),
            refunded=result.refunded_amount,
        )
    return result


async def deduct(
    db: AsyncSession,
    shop: str,
    amount: int,
    feature: str,
    metadata: dict | None = None,
    related_entity_id: str | None = None,
) -> int:
    """Immediate debit for callers that already know the exact cost.

    Returns the new balance.
    """
    if amount <= 0:
        raise InvalidAmountError("Deduction amount must be positive", amount=amount)

    account = await get_or_create(db, shop)
    account_id = account.id

    new_balance = await _debit(db, account_id, amount, count_as_used=True)
    if new_balance is None:
        await db.rollback()
        balance = await _current_balance(db, account_id)
        logger.info("ledger.deduct_rejected", shop=shop, feature=feature, required=amount, balance=balance)
        raise InsufficientBalanceError(required=amount, balance=balance)

    db.add(
        TokenUsageEntry(
            account_id=account_id,
            feature=feature,
            tokens_used=amount,
            related_entity_id=related_entity_id,
            metadata_=metadata or {},
        )
    )
    await db.commit()

    logger.info("ledger.deducted", shop=shop, feature=feature, amount=amount, balance=new_balance)
    return new_balance


async def expire_stale_reservations(
    db: AsyncSession,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> dict:
    """Cancel reservations left open longer than the TTL.

    Each reservation is released in its own transaction; a failure on one
    does not block the rest.
    """
    ttl = ttl_minutes if ttl_minutes is not None else settings.RESERVATION_TTL_MINUTES
    cutoff = (now or utcnow()) - timedelta(minutes=ttl)

    result = await db.execute(
        select(TokenAccount.shop, TokenUsageEntry.reservation_id)
        .select_from(TokenUsageEntry)
        .join(TokenAccount, TokenAccount.id == TokenUsageEntry.account_id)
        .where(
            TokenUsageEntry.status == RESERVATION_RESERVED,
            TokenUsageEntry.created_at < cutoff,
        )
        .order_by(TokenUsageEntry.created_at)
    )
    stale = result.all()

    expired = 0
    refunded = 0
    errors = 0
    for shop, reservation_id in stale:
        try:
            outcome = await cancel(db, shop, reservation_id)
        except Exception:
            errors += 1
            await db.rollback()
            logger.exception("ledger.sweep_error", shop=shop, reservation_id=str(reservation_id))
            continue
        if outcome.found:
            expired += 1
            refunded += outcome.refunded_amount

    if stale:
        logger.info("ledger.sweep_complete", expired=expired, refunded=refunded, errors=errors)
    return {"expired": expired, "refunded": refunded, "errors": errors}


# --- Purchase recorder ---


async def add_purchase(
    db: AsyncSession,
    shop: str,
    usd_amount: Decimal | float | int,
    tokens_received: int,
    external_charge_id: str | None = None,
) -> TokenPurchase:
    """Credit a confirmed purchase.

    A charge id already recorded for the shop returns the existing purchase
    without crediting again (payment webhooks are retried).
    """
    if tokens_received <= 0:
        raise InvalidAmountError("Purchased tokens must be positive", tokens=tokens_received)
    usd = Decimal(str(usd_amount))
    if usd < 0:
        raise InvalidAmountError("Purchase amount must not be negative", usd_amount=str(usd))

    account = await get_or_create(db, shop)
    account_id = account.id

    if external_charge_id:
        existing = await _find_purchase(db, account_id, external_charge_id)
        if existing is not None:
            logger.info("ledger.purchase_duplicate", shop=shop, external_charge_id=external_charge_id)
            return existing

    app_share, budget_share = split_revenue(usd)
    now = utcnow()

    await db.execute(
        update(TokenAccount)
        .where(TokenAccount.id == account_id)
        .values(
            balance=TokenAccount.balance + tokens_received,
            total_purchased=TokenAccount.total_purchased + tokens_received,
            last_purchase_usd=usd,
            last_purchase_tokens=tokens_received,
            last_purchase_at=now,
            last_purchase_charge_id=external_charge_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    purchase = TokenPurchase(
        account_id=account_id,
        usd_amount=usd,
        app_revenue_share=app_share,
        token_budget_share=budget_share,
        tokens_received=tokens_received,
        external_charge_id=external_charge_id,
        status="completed",
    )
    db.add(purchase)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_purchase(db, account_id, external_charge_id) if external_charge_id else None
        if existing is None:
            raise
        logger.info("ledger.purchase_duplicate", shop=shop, external_charge_id=external_charge_id)
        return existing

    logger.info(
        "ledger.purchase_recorded",
        shop=shop,
        usd_amount=str(usd),
        tokens_received=tokens_received,
        external_charge_id=external_charge_id,
    )
    return purchase


async def _find_purchase(db: AsyncSession, account_id: uuid.UUID, external_charge_id: str) -> TokenPurchase | None:
    result = await db.execute(
        select(TokenPurchase).where(
            TokenPurchase.account_id == account_id,
            TokenPurchase.external_charge_id == external_charge_id,
        )
    )
    return result.scalar_one_or_none()


# --- Reporting ---


async def get_balance_summary(db: AsyncSession, shop: str) -> dict:
    account = await get_or_create(db, shop)

    reserved_result = await db.execute(
        select(
            func.count(TokenUsageEntry.id),
            func.coalesce(func.sum(TokenUsageEntry.estimated_amount), 0),
        ).where(
            TokenUsageEntry.account_id == account.id,
            TokenUsageEntry.status == RESERVATION_RESERVED,
        )
    )
    open_reservations, reserved_tokens = reserved_result.one()

    last_purchase = None
    if account.last_purchase_at is not None:
        last_purchase = {
            "usd_amount": account.last_purchase_usd,
            "tokens": account.last_purchase_tokens,
            "date": account.last_purchase_at,
            "external_charge_id": account.last_purchase_charge_id,
        }

    return {
        "shop": account.shop,
        "balance": account.balance,
        "total_purchased": account.total_purchased,
        "total_used": account.total_used,
        "reserved": int(reserved_tokens or 0),
        "open_reservations": int(open_reservations or 0),
        "last_purchase": last_purchase,
    }


async def list_usage(
    db: AsyncSession,
    shop: str,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[TokenUsageEntry], int]:
    account = await get_or_create(db, shop)
    total = (
        await db.execute(
            select(func.count()).select_from(TokenUsageEntry).where(TokenUsageEntry.account_id == account.id)
        )
    ).scalar() or 0
    result = await db.execute(
        select(TokenUsageEntry)
        .where(TokenUsageEntry.account_id == account.id)
        .order_by(TokenUsageEntry.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all()), total


async def list_purchases(
    db: AsyncSession,
    shop: str,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[TokenPurchase], int]:
    account = await get_or_create(db, shop)
    total = (
        await db.execute(
            select(func.count()).select_from(TokenPurchase).where(TokenPurchase.account_id == account.id)
        )
    ).scalar() or 0
    result = await db.execute(
        select(TokenPurchase)
        .where(TokenPurchase.account_id == account.id)
        .order_by(TokenPurchase.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total
