"""Tests for the plan quota gate: trial window, call counter and vendors."""

import asyncio
from datetime import timedelta

import pytest

from tests.conftest import create_subscription
from tokenledger.core.errors import (
    InvalidAmountError,
    ProviderNotAllowedError,
    QuotaExceededError,
    SubscriptionNotFoundError,
)
from tokenledger.models.base import utcnow
from tokenledger.models.subscription import Subscription
from tokenledger.services import quota_service

SHOP = "quota-store.myshopify.com"


def _subscription(**fields) -> Subscription:
    values = {
        "shop": SHOP,
        "plan": "starter",
        "query_count": 0,
        "query_limit": 50,
        "allowed_providers": ["deepseek", "llama"],
        "trial_ends_at": None,
    }
    values.update(fields)
    return Subscription(**values)


class TestCheckQuota:
    def test_allowed_under_limit(self):
        decision = quota_service.check_quota(_subscription(query_count=49))
        assert decision.allowed
        assert decision.reason is None

    def test_rejected_at_limit(self):
        decision = quota_service.check_quota(_subscription(query_count=50))
        assert not decision.allowed
        assert decision.reason == "quota_exceeded"

    def test_trial_bypasses_counter(self):
        subscription = _subscription(query_count=500, trial_ends_at=utcnow() + timedelta(days=1))

        decision = quota_service.check_quota(subscription)

        assert decision.allowed
        assert decision.in_trial

    def test_expired_trial_uses_counter(self):
        subscription = _subscription(query_count=50, trial_ends_at=utcnow() - timedelta(seconds=1))
        assert not quota_service.check_quota(subscription).allowed

    def test_explicit_now(self):
        ends = utcnow() + timedelta(days=1)
        subscription = _subscription(query_count=50, trial_ends_at=ends)

        assert quota_service.check_quota(subscription, now=ends - timedelta(minutes=1)).allowed
        assert not quota_service.check_quota(subscription, now=ends).allowed


class TestCheckProviderAllowed:
    def test_vendor_in_plan(self):
        assert quota_service.check_provider_allowed(_subscription(), "deepseek")

    def test_model_id_mapped_to_vendor(self):
        assert quota_service.check_provider_allowed(_subscription(), "meta-llama/llama-3.1-8b-instruct")

    def test_vendor_outside_plan(self):
        assert not quota_service.check_provider_allowed(_subscription(), "anthropic/claude-3.5-sonnet")

    def test_missing_provider(self):
        assert not quota_service.check_provider_allowed(_subscription(), None)


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_new_subscription_starts_trial(self, db):
        subscription = await quota_service.get_or_create_subscription(db, SHOP)

        assert subscription.plan == "starter"
        assert subscription.query_limit == 50
        assert subscription.allowed_providers == ["deepseek", "llama"]
        assert quota_service.is_in_trial(subscription)

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, db):
        with pytest.raises(InvalidAmountError):
            await quota_service.get_or_create_subscription(db, SHOP, plan="platinum")

    @pytest.mark.asyncio
    async def test_change_plan_keeps_counter(self, db):
        await create_subscription(db, SHOP, query_count=12)

        subscription = await quota_service.change_plan(db, SHOP, "growth")

        assert subscription.plan == "growth"
        assert subscription.query_limit == 1500
        assert subscription.query_count == 12
        assert "claude" in subscription.allowed_providers

    @pytest.mark.asyncio
    async def test_plan_view(self, db):
        subscription = await create_subscription(db, SHOP, plan="professional", query_count=3)

        view = quota_service.build_plan_view(subscription)

        assert view["plan"] == "Professional"
        assert view["plan_key"] == "professional"
        assert view["query_count"] == 3
        assert not view["in_trial"]
        assert "openai/gpt-4o-mini" in view["models_suggested"]


class TestConsume:
    @pytest.mark.asyncio
    async def test_increments_counter(self, db):
        await create_subscription(db, SHOP)

        assert await quota_service.consume(db, SHOP) == 1
        assert await quota_service.consume(db, SHOP) == 2

    @pytest.mark.asyncio
    async def test_missing_subscription(self, db):
        with pytest.raises(SubscriptionNotFoundError):
            await quota_service.consume(db, SHOP)

    @pytest.mark.asyncio
    async def test_request_key_counts_once(self, db):
        await create_subscription(db, SHOP)

        first = await quota_service.consume(db, SHOP, request_key="req-1")
        retry = await quota_service.consume(db, SHOP, request_key="req-1")
        other = await quota_service.consume(db, SHOP, request_key="req-2")

        assert (first, retry, other) == (1, 1, 2)

    @pytest.mark.asyncio
    async def test_concurrent_consumes_are_not_lost(self, db, session_factory):
        await create_subscription(db, SHOP)

        async def consume():
            async with session_factory() as session:
                return await quota_service.consume(session, SHOP)

        counts = await asyncio.gather(*(consume() for _ in range(8)))

        assert sorted(counts) == list(range(1, 9))
        subscription = await quota_service.require_subscription(db, SHOP)
        assert subscription.query_count == 8

    @pytest.mark.asyncio
    async def test_concurrent_retries_with_same_key(self, db, session_factory):
        await create_subscription(db, SHOP)

        async def consume():
            async with session_factory() as session:
                return await quota_service.consume(session, SHOP, request_key="req-same")

        await asyncio.gather(*(consume() for _ in range(4)))

        subscription = await quota_service.require_subscription(db, SHOP)
        assert subscription.query_count == 1


class TestEnforce:
    @pytest.mark.asyncio
    async def test_passes_within_quota(self, db):
        await create_subscription(db, SHOP, query_count=10)

        subscription = await quota_service.enforce(db, SHOP, provider="deepseek/deepseek-chat")

        assert subscription.shop == SHOP

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, db):
        await create_subscription(db, SHOP, query_count=50)

        with pytest.raises(QuotaExceededError) as exc_info:
            await quota_service.enforce(db, SHOP)

        assert exc_info.value.context == {"query_count": 50, "query_limit": 50}

    @pytest.mark.asyncio
    async def test_trial_ignores_quota(self, db):
        await create_subscription(db, SHOP, query_count=50, in_trial=True)

        await quota_service.enforce(db, SHOP)

    @pytest.mark.asyncio
    async def test_provider_not_in_plan(self, db):
        await create_subscription(db, SHOP)

        with pytest.raises(ProviderNotAllowedError) as exc_info:
            await quota_service.enforce(db, SHOP, provider="anthropic/claude-3.5-sonnet")

        assert exc_info.value.context["provider"] == "claude"
