"""Tests for the metered call wrapper and the reservation sweep job."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from tests.conftest import create_subscription, fund_account
from tokenledger.core.errors import InsufficientBalanceError, ProviderNotAllowedError, QuotaExceededError
from tokenledger.models.base import utcnow
from tokenledger.models.job import Job
from tokenledger.models.token_account import TokenUsageEntry
from tokenledger.services import ledger_service, quota_service
from tokenledger.services.metering_service import metered_call, usage_total_tokens
from tokenledger.workers.tasks.reservation_sweep import JOB_TYPE, run_reservation_sweep

SHOP = "metered-store.myshopify.com"


class ProviderDown(Exception):
    pass


class TestUsageTotalTokens:
    def test_camel_case(self):
        assert usage_total_tokens({"usage": {"promptTokens": 120, "completionTokens": 30}}) == 150

    def test_snake_case(self):
        assert usage_total_tokens({"usage": {"prompt_tokens": 10, "completion_tokens": 5}}) == 15

    def test_total_wins(self):
        assert usage_total_tokens({"usage": {"total_tokens": 99, "prompt_tokens": 1}}) == 99

    def test_missing_usage(self):
        assert usage_total_tokens({"choices": []}) == 0

    def test_attribute_style_response(self):
        class Usage:
            total_tokens = None
            prompt_tokens = 7
            completion_tokens = 3

        class Response:
            usage = Usage()

        assert usage_total_tokens(Response()) == 10

    def test_attribute_style_camel_case(self):
        class Usage:
            promptTokens = 12
            completionTokens = 8

        class Response:
            usage = Usage()

        assert usage_total_tokens(Response()) == 20


class TestMeteredCall:
    @pytest.mark.asyncio
    async def test_successful_call_reconciles_and_counts(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 1000)

        async def call():
            return {"content": "ok", "usage": {"promptTokens": 60, "completionTokens": 20}}

        result = await metered_call(db, SHOP, "ai-seo-product-basic", 100, call, provider="deepseek")

        assert result.value["content"] == "ok"
        assert result.tokens_used == 80
        assert result.reservation.estimated_amount == 110
        assert result.reservation.refunded_amount == 30
        assert result.query_count == 1

        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 920
        assert account.total_used == 80

    @pytest.mark.asyncio
    async def test_failed_call_releases_reservation(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 1000)

        async def call():
            raise ProviderDown("503 from provider")

        with pytest.raises(ProviderDown):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call)

        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 1000
        assert account.total_used == 0
        subscription = await quota_service.require_subscription(db, SHOP)
        assert subscription.query_count == 0

    @pytest.mark.asyncio
    async def test_unreadable_usage_releases_reservation(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 1000)

        async def call():
            return {"usage": {"promptTokens": "n/a"}}

        with pytest.raises(ValueError):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call)

        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 1000
        assert account.total_used == 0
        entry = (
            await db.execute(select(TokenUsageEntry).execution_options(populate_existing=True))
        ).scalar_one()
        assert entry.status == "finalized"
        assert entry.refunded_amount == 110
        subscription = await quota_service.require_subscription(db, SHOP)
        assert subscription.query_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_call_releases_reservation(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 1000)

        async def call():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call)

        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 1000

    @pytest.mark.asyncio
    async def test_quota_checked_before_reserving(self, db):
        await create_subscription(db, SHOP, query_count=50)
        await fund_account(db, SHOP, 1000)
        called = False

        async def call():
            nonlocal called
            called = True

        with pytest.raises(QuotaExceededError):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call)

        assert not called
        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 1000

    @pytest.mark.asyncio
    async def test_provider_outside_plan(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 1000)

        async def call():
            return {}

        with pytest.raises(ProviderNotAllowedError):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call, provider="openai/gpt-4o-mini")

    @pytest.mark.asyncio
    async def test_insufficient_balance_skips_call(self, db):
        await create_subscription(db, SHOP)
        await fund_account(db, SHOP, 50)
        called = False

        async def call():
            nonlocal called
            called = True

        with pytest.raises(InsufficientBalanceError):
            await metered_call(db, SHOP, "ai-seo-collection", 100, call)

        assert not called


class TestReservationSweepJob:
    @pytest.mark.asyncio
    async def test_sweep_records_completed_job(self, db):
        await fund_account(db, SHOP, 100)
        reservation_id = await ledger_service.reserve(db, SHOP, 40, "ai-seo-collection")
        await db.execute(
            update(TokenUsageEntry)
            .where(TokenUsageEntry.reservation_id == reservation_id)
            .values(created_at=utcnow() - timedelta(hours=1))
        )
        await db.commit()

        summary = await run_reservation_sweep(db, celery_task_id="celery-123", ttl_minutes=30)

        assert summary["expired"] == 1
        assert summary["refunded"] == 40
        job = (await db.execute(select(Job).execution_options(populate_existing=True))).scalar_one()
        assert job.job_type == JOB_TYPE
        assert job.status == "completed"
        assert job.celery_task_id == "celery-123"
        assert job.parameters == {"ttl_minutes": 30}
        assert job.result_summary == {"expired": 1, "refunded": 40, "errors": 0}
        assert str(job.id) == summary["job_id"]

        account = await ledger_service.get_or_create(db, SHOP)
        assert account.balance == 100

    @pytest.mark.asyncio
    async def test_sweep_failure_marks_job_failed(self, db, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(ledger_service, "expire_stale_reservations", broken)

        with pytest.raises(RuntimeError):
            await run_reservation_sweep(db)

        job = (await db.execute(select(Job).execution_options(populate_existing=True))).scalar_one()
        assert job.status == "failed"
        assert job.error_message == "database went away"
        assert job.completed_at is not None
