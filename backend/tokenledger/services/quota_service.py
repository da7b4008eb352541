"""Plan quota gate: call counter, trial window and allowed AI vendors.

The quota is a separate resource from the token balance and is consulted
first in the request path. ``consume`` is an atomic server-side increment;
with a ``request_key`` it counts a logical request at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.config import settings
from tokenledger.core.errors import (
    InvalidAmountError,
    ProviderNotAllowedError,
    QuotaExceededError,
    SubscriptionNotFoundError,
)
from tokenledger.models.base import utcnow
from tokenledger.models.subscription import QuotaConsumption, Subscription
from tokenledger.services.plan_catalog import allowed_models_for_plan, get_plan_config, vendor_from_model

logger = structlog.get_logger()

QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    in_trial: bool
    query_count: int
    query_limit: int
    reason: str | None = None


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_in_trial(subscription: Subscription, now: datetime | None = None) -> bool:
    trial_ends_at = as_utc(subscription.trial_ends_at)
    if trial_ends_at is None:
        return False
    return (now or utcnow()) < trial_ends_at


def check_quota(subscription: Subscription, now: datetime | None = None) -> QuotaDecision:
    """Trial bypasses the counter; otherwise allowed while ``query_count < query_limit``."""
    in_trial = is_in_trial(subscription, now)
    count = subscription.query_count or 0
    limit = subscription.query_limit or 0

    if in_trial or count < limit:
        return QuotaDecision(allowed=True, in_trial=in_trial, query_count=count, query_limit=limit)
    return QuotaDecision(
        allowed=False,
        in_trial=False,
        query_count=count,
        query_limit=limit,
        reason=QUOTA_EXCEEDED,
    )


def check_provider_allowed(subscription: Subscription, provider: str | None) -> bool:
    """Membership test of the provider (or model id's vendor) against the plan."""
    vendor = vendor_from_model(provider)
    if not vendor:
        return False
    allowed = {vendor_from_model(p) for p in (subscription.allowed_providers or [])}
    return vendor in allowed


async def get_subscription(db: AsyncSession, shop: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.shop == shop)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_subscription(db: AsyncSession, shop: str) -> Subscription:
    subscription = await get_subscription(db, shop)
    if subscription is None:
        raise SubscriptionNotFoundError(shop=shop)
    return subscription


def plan_values(plan: str) -> dict:
    config = get_plan_config(plan)
    if config is None:
        raise InvalidAmountError(f"Unknown plan: {plan}", plan=plan)
    return {
        "plan": config["key"],
        "query_limit": config["query_limit"],
        "product_limit": config["product_limit"],
        "allowed_providers": list(config["providers_allowed"]),
    }


def new_subscription(shop: str, plan: str | None = None, trial_days: int | None = None) -> Subscription:
    """Unsaved subscription on ``plan`` with a fresh trial window."""
    values = plan_values(plan or settings.DEFAULT_PLAN)
    days = settings.TRIAL_DAYS if trial_days is None else trial_days
    now = utcnow()
    return Subscription(
        shop=shop,
        query_count=0,
        started_at=now,
        trial_ends_at=now + timedelta(days=days),
        **values,
    )


async def get_or_create_subscription(
    db: AsyncSession,
    shop: str,
    plan: str | None = None,
    trial_days: int | None = None,
) -> Subscription:
    """Return the shop's subscription, starting a trial on the given plan if missing."""
    subscription = await get_subscription(db, shop)
    if subscription is not None:
        return subscription

    subscription = new_subscription(shop, plan=plan, trial_days=trial_days)
    plan_key = subscription.plan
    db.add(subscription)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
    else:
        logger.info("quota.subscription_created", shop=shop, plan=plan_key)

    return await require_subscription(db, shop)


async def change_plan(db: AsyncSession, shop: str, plan: str) -> Subscription:
    """Switch plan and copy its limits; the call counter is kept."""
    values = plan_values(plan)
    await get_or_create_subscription(db, shop, plan=plan)
    await db.execute(
        update(Subscription)
        .where(Subscription.shop == shop)
        .values(**values, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("quota.plan_changed", shop=shop, plan=values["plan"])
    return await require_subscription(db, shop)


async def consume(db: AsyncSession, shop: str, request_key: str | None = None) -> int:
    """Count one accepted metered call.

    Call only after the gated operation was accepted. With ``request_key``
    a retried logical request is not counted twice. Returns the new
    ``query_count``.
    """
    subscription = await require_subscription(db, shop)
    subscription_id = subscription.id

    if request_key:
        db.add(QuotaConsumption(subscription_id=subscription_id, request_key=request_key))
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            current = await require_subscription(db, shop)
            logger.info("quota.consume_duplicate", shop=shop, request_key=request_key)
            return current.query_count

    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(query_count=Subscription.query_count + 1)
        .returning(Subscription.query_count)
        .execution_options(synchronize_session=False)
    )
    new_count = result.scalar_one()
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent retry with the same key committed first
        await db.rollback()
        current = await require_subscription(db, shop)
        logger.info("quota.consume_duplicate", shop=shop, request_key=request_key)
        return current.query_count

    logger.debug("quota.consumed", shop=shop, query_count=new_count)
    return new_count


async def enforce(db: AsyncSession, shop: str, provider: str | None = None) -> Subscription:
    """Gate a metered call: raise on exhausted quota or a provider outside the plan."""
    subscription = await require_subscription(db, shop)

    decision = check_quota(subscription)
    if not decision.allowed:
        logger.info(
            "quota.rejected",
            shop=shop,
            query_count=decision.query_count,
            query_limit=decision.query_limit,
        )
        raise QuotaExceededError(query_count=decision.query_count, query_limit=decision.query_limit)

    if provider and not check_provider_allowed(subscription, provider):
        vendor = vendor_from_model(provider)
        logger.info("quota.provider_rejected", shop=shop, provider=vendor, plan=subscription.plan)
        raise ProviderNotAllowedError(
            f"Model vendor '{vendor}' not allowed for your plan",
            provider=vendor,
            plan=subscription.plan,
        )

    return subscription


def build_plan_view(subscription: Subscription, now: datetime | None = None) -> dict:
    config = get_plan_config(subscription.plan)
    return {
        "shop": subscription.shop,
        "plan": config["name"] if config else subscription.plan,
        "plan_key": config["key"] if config else None,
        "query_limit": subscription.query_limit,
        "product_limit": subscription.product_limit,
        "query_count": subscription.query_count or 0,
        "providers_allowed": list(subscription.allowed_providers or []),
        "models_suggested": allowed_models_for_plan(subscription.plan),
        "in_trial": is_in_trial(subscription, now),
        "trial_ends_at": as_utc(subscription.trial_ends_at),
        "discount_percent": subscription.discount_percent or 0,
    }
