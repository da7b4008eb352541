"""Promo codes and the per-shop promo allowlist.

Redemption is one conditional UPDATE (``current_uses < max_uses`` and not
expired) so two concurrent attempts on the last remaining use produce
exactly one success. `redeem_for_shop` applies the returned entitlement to
the shop's subscription in the same transaction as the use; the token
ledger is never touched.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.config import settings
from tokenledger.core.errors import InvalidAmountError, PromoInvalidError
from tokenledger.models.base import utcnow
from tokenledger.models.promo_code import PROMO_TYPES, PromoAllowlistEntry, PromoCode
from tokenledger.models.subscription import Subscription
from tokenledger.services import quota_service
from tokenledger.services.plan_catalog import get_plan_config

logger = structlog.get_logger()

DEFAULT_GRANTED_PLAN = "enterprise"


@dataclass(frozen=True)
class Entitlement:
    code: str
    type: str
    trial_days: int
    discount_percent: int
    campaign: str | None = None
    granted_plan: str | None = None


@dataclass(frozen=True)
class PromoResult:
    valid: bool
    entitlement: Entitlement | None = None
    reason: str | None = None

    @property
    def error(self) -> str | None:
        if self.valid:
            return None
        return PromoInvalidError(self.reason or PromoInvalidError.NOT_FOUND_OR_EXPIRED).message


@dataclass
class GenerateOptions:
    prefix: str = field(default_factory=lambda: settings.PROMO_DEFAULT_PREFIX)
    type: str = "free_period"
    trial_days: int = 30
    discount_percent: int = 0
    granted_plan: str | None = None
    max_uses: int = 1
    expires_in_days: int = field(default_factory=lambda: settings.PROMO_DEFAULT_EXPIRES_IN_DAYS)
    campaign: str | None = None
    notes: str | None = None
    created_by: str = "system"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _entitlement(promo: PromoCode) -> Entitlement:
    return Entitlement(
        code=promo.code,
        type=promo.type,
        trial_days=promo.trial_days,
        discount_percent=promo.discount_percent,
        campaign=promo.campaign,
        granted_plan=promo.granted_plan,
    )


async def _find(db: AsyncSession, code: str) -> PromoCode | None:
    result = await db.execute(
        select(PromoCode)
        .where(PromoCode.code == code)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _diagnose(promo: PromoCode | None, now: datetime) -> str:
    if promo is None:
        return PromoInvalidError.NOT_FOUND_OR_EXPIRED
    expires_at = promo.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if now >= expires_at:
        return PromoInvalidError.NOT_FOUND_OR_EXPIRED
    return PromoInvalidError.MAX_USES_REACHED


async def check_validity(db: AsyncSession, code: str) -> PromoResult:
    """Validate a code for display without consuming a use."""
    normalized = normalize_code(code)
    now = utcnow()
    promo = await _find(db, normalized)
    if promo is None:
        return PromoResult(valid=False, reason=PromoInvalidError.NOT_FOUND_OR_EXPIRED)

    expires_at = promo.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if now < expires_at and promo.current_uses < promo.max_uses:
        return PromoResult(valid=True, entitlement=_entitlement(promo))
    return PromoResult(valid=False, reason=_diagnose(promo, now))


async def validate_and_use(db: AsyncSession, code: str) -> PromoResult:
    """Consume one use of a code and return its entitlement."""
    result = await _claim_use(db, code)
    if result.valid:
        await db.commit()
        logger.info("promo.redeemed", code=result.entitlement.code, type=result.entitlement.type)
    return result


async def _claim_use(db: AsyncSession, code: str) -> PromoResult:
    """Increment ``current_uses`` in the open transaction without committing."""
    normalized = normalize_code(code)
    if not normalized:
        return PromoResult(valid=False, reason=PromoInvalidError.NOT_FOUND_OR_EXPIRED)

    now = utcnow()
    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.code == normalized,
            PromoCode.expires_at > now,
            PromoCode.current_uses < PromoCode.max_uses,
        )
        .values(current_uses=PromoCode.current_uses + 1, updated_at=now)
        .returning(
            PromoCode.code,
            PromoCode.type,
            PromoCode.trial_days,
            PromoCode.discount_percent,
            PromoCode.campaign,
            PromoCode.granted_plan,
        )
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()

    if row is None:
        await db.rollback()
        reason = _diagnose(await _find(db, normalized), now)
        logger.info("promo.rejected", code=normalized, reason=reason)
        return PromoResult(valid=False, reason=reason)

    return PromoResult(
        valid=True,
        entitlement=Entitlement(
            code=row.code,
            type=row.type,
            trial_days=row.trial_days,
            discount_percent=row.discount_percent,
            campaign=row.campaign,
            granted_plan=row.granted_plan,
        ),
    )


async def generate_codes(db: AsyncSession, count: int, options: GenerateOptions | None = None) -> list[str]:
    """Create ``count`` unique codes ``PREFIX-XXXXXXXX``.

    A collision is retried without consuming a slot; the retry budget is
    per code.
    """
    opts = options or GenerateOptions()
    if count <= 0 or count > settings.PROMO_MAX_GENERATE:
        raise InvalidAmountError(
            f"count must be between 1 and {settings.PROMO_MAX_GENERATE}", count=count
        )
    if opts.type not in PROMO_TYPES:
        raise InvalidAmountError(f"Unknown promo type: {opts.type}", type=opts.type)
    if opts.max_uses <= 0:
        raise InvalidAmountError("max_uses must be positive", max_uses=opts.max_uses)
    granted_plan = opts.granted_plan
    if granted_plan:
        config = get_plan_config(granted_plan)
        if config is None:
            raise InvalidAmountError(f"Unknown plan: {granted_plan}", granted_plan=granted_plan)
        granted_plan = config["key"]

    prefix = normalize_code(opts.prefix)
    expires_at = utcnow() + timedelta(days=opts.expires_in_days)
    codes: list[str] = []

    while len(codes) < count:
        for _attempt in range(settings.PROMO_MAX_COLLISION_RETRIES):
            code = f"{prefix}-{secrets.token_hex(4).upper()}"
            db.add(
                PromoCode(
                    code=code,
                    type=opts.type,
                    trial_days=opts.trial_days,
                    discount_percent=opts.discount_percent,
                    granted_plan=granted_plan,
                    max_uses=opts.max_uses,
                    current_uses=0,
                    expires_at=expires_at,
                    campaign=opts.campaign,
                    notes=opts.notes,
                    created_by=opts.created_by,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug("promo.code_collision", code=code)
                continue
            codes.append(code)
            break
        else:
            raise RuntimeError(f"could not generate a unique promo code with prefix {prefix}")

    logger.info("promo.codes_generated", count=len(codes), prefix=prefix, campaign=opts.campaign)
    return codes


def _entitlement_values(subscription: Subscription, entitlement: Entitlement, now: datetime) -> dict:
    values = {"promo_code": entitlement.code, "discount_percent": entitlement.discount_percent or 0}
    if entitlement.type == "plan_grant":
        values.update(quota_service.plan_values(entitlement.granted_plan or DEFAULT_GRANTED_PLAN))
    elif entitlement.type in ("trial_extension", "free_period"):
        current_end = quota_service.as_utc(subscription.trial_ends_at)
        start = current_end if current_end and current_end > now else now
        values["trial_ends_at"] = start + timedelta(days=entitlement.trial_days)
    return values


async def _write_entitlement(db: AsyncSession, subscription: Subscription, entitlement: Entitlement) -> None:
    now = utcnow()
    values = _entitlement_values(subscription, entitlement, now)
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id)
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )


async def apply_entitlement(db: AsyncSession, shop: str, entitlement: Entitlement) -> Subscription:
    """Apply a redeemed entitlement to the shop's plan and trial fields."""
    subscription = await quota_service.get_or_create_subscription(db, shop)
    await _write_entitlement(db, subscription, entitlement)
    await db.commit()

    logger.info("promo.entitlement_applied", shop=shop, code=entitlement.code, type=entitlement.type)
    return await quota_service.require_subscription(db, shop)


async def redeem_for_shop(db: AsyncSession, shop: str, code: str) -> tuple[Entitlement, Subscription]:
    """Consume a code and apply it to ``shop``. Raises ``PromoInvalidError``.

    The use and the entitlement commit together; if the entitlement cannot
    be applied the use is rolled back.
    """
    result = await _claim_use(db, code)
    if not result.valid:
        raise PromoInvalidError(result.reason)
    entitlement = result.entitlement

    try:
        subscription = await quota_service.get_subscription(db, shop)
        if subscription is None:
            subscription = quota_service.new_subscription(shop)
            db.add(subscription)
            await db.flush()
        await _write_entitlement(db, subscription, entitlement)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("promo.apply_failed", shop=shop, code=entitlement.code, type=entitlement.type)
        raise

    logger.info("promo.redeemed", shop=shop, code=entitlement.code, type=entitlement.type)
    return entitlement, await quota_service.require_subscription(db, shop)


# --- Allowlist ---


def _normalize_shop(shop: str) -> str:
    return (shop or "").strip().lower()


async def check_shop(db: AsyncSession, shop: str) -> dict:
    now = utcnow()
    result = await db.execute(
        select(PromoAllowlistEntry).where(
            PromoAllowlistEntry.shop == _normalize_shop(shop),
            PromoAllowlistEntry.expires_at > now,
        )
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        return {"on_allowlist": False}
    return {
        "on_allowlist": True,
        "promo": {
            "type": entry.promo_type,
            "trial_days": entry.trial_days,
            "discount_percent": entry.discount_percent,
            "expires_at": entry.expires_at,
            "campaign": entry.campaign,
            "reason": entry.reason,
        },
    }


async def add_shop(
    db: AsyncSession,
    shop: str,
    promo_type: str = "free_period",
    trial_days: int = 30,
    discount_percent: int = 0,
    expires_in_days: int = 30,
    reason: str | None = None,
    campaign: str | None = None,
    added_by: str = "system",
    notes: str | None = None,
) -> PromoAllowlistEntry:
    """Upsert an allowlist entry for ``shop``."""
    if promo_type not in PROMO_TYPES:
        raise InvalidAmountError(f"Unknown promo type: {promo_type}", type=promo_type)

    normalized = _normalize_shop(shop)
    values = {
        "promo_type": promo_type,
        "trial_days": trial_days,
        "discount_percent": discount_percent,
        "expires_at": utcnow() + timedelta(days=expires_in_days),
        "reason": reason,
        "campaign": campaign,
        "added_by": added_by,
        "notes": notes,
    }

    result = await db.execute(
        select(PromoAllowlistEntry)
        .where(PromoAllowlistEntry.shop == normalized)
        .execution_options(populate_existing=True)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        entry = PromoAllowlistEntry(shop=normalized, **values)
        db.add(entry)
    else:
        for key, value in values.items():
            setattr(entry, key, value)
    await db.commit()

    logger.info("promo.allowlist_added", shop=normalized, promo_type=promo_type, campaign=campaign)
    return entry


async def remove_shop(db: AsyncSession, shop: str) -> bool:
    result = await db.execute(
        delete(PromoAllowlistEntry).where(PromoAllowlistEntry.shop == _normalize_shop(shop))
    )
    await db.commit()
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.info("promo.allowlist_removed", shop=_normalize_shop(shop))
    return removed
