"""Tests for promo code redemption, generation and the promo allowlist."""

import asyncio
from datetime import timedelta
from itertools import chain, repeat

import pytest
from sqlalchemy import select

from tests.conftest import create_promo_code, create_subscription
from tokenledger.core.errors import InvalidAmountError, PromoInvalidError
from tokenledger.models.base import utcnow
from tokenledger.models.promo_code import PromoCode
from tokenledger.services import promo_service, quota_service
from tokenledger.services.promo_service import Entitlement, GenerateOptions

SHOP = "promo-store.myshopify.com"


async def _uses(db, code: str) -> int:
    result = await db.execute(
        select(PromoCode.current_uses).where(PromoCode.code == code)
    )
    return result.scalar_one()


class TestValidateAndUse:
    @pytest.mark.asyncio
    async def test_valid_code_returns_entitlement(self, db):
        await create_promo_code(db, code="WELCOME30", max_uses=5, campaign="launch")

        result = await promo_service.validate_and_use(db, "  welcome30 ")

        assert result.valid
        assert result.entitlement == Entitlement(
            code="WELCOME30",
            type="free_period",
            trial_days=30,
            discount_percent=0,
            campaign="launch",
            granted_plan=None,
        )
        assert await _uses(db, "WELCOME30") == 1

    @pytest.mark.asyncio
    async def test_unknown_code(self, db):
        result = await promo_service.validate_and_use(db, "NOPE")

        assert not result.valid
        assert result.reason == "not_found_or_expired"
        assert result.error == "Invalid or expired promo code"

    @pytest.mark.asyncio
    async def test_empty_code(self, db):
        result = await promo_service.validate_and_use(db, "   ")
        assert result.reason == "not_found_or_expired"

    @pytest.mark.asyncio
    async def test_expired_code(self, db):
        await create_promo_code(db, code="OLD", expires_in=timedelta(days=-1))

        result = await promo_service.validate_and_use(db, "OLD")

        assert result.reason == "not_found_or_expired"
        assert await _uses(db, "OLD") == 0

    @pytest.mark.asyncio
    async def test_max_uses_reached(self, db):
        await create_promo_code(db, code="USEDUP", max_uses=2, current_uses=2)

        result = await promo_service.validate_and_use(db, "USEDUP")

        assert result.reason == "max_uses_reached"
        assert result.error == "Promo code has reached maximum uses"
        assert await _uses(db, "USEDUP") == 2

    @pytest.mark.asyncio
    async def test_concurrent_redemption_of_last_use(self, db, session_factory):
        await create_promo_code(db, code="ONLYONE", max_uses=1)

        async def redeem():
            async with session_factory() as session:
                return await promo_service.validate_and_use(session, "ONLYONE")

        results = await asyncio.gather(redeem(), redeem())

        assert sum(1 for r in results if r.valid) == 1
        assert [r.reason for r in results if not r.valid] == ["max_uses_reached"]
        assert await _uses(db, "ONLYONE") == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_redemptions_respect_cap(self, db, session_factory):
        await create_promo_code(db, code="FIVE", max_uses=5)

        async def redeem():
            async with session_factory() as session:
                return await promo_service.validate_and_use(session, "FIVE")

        results = await asyncio.gather(*(redeem() for _ in range(12)))

        assert sum(1 for r in results if r.valid) == 5
        assert await _uses(db, "FIVE") == 5


class TestCheckValidity:
    @pytest.mark.asyncio
    async def test_does_not_consume(self, db):
        await create_promo_code(db, code="PEEK", max_uses=1)

        first = await promo_service.check_validity(db, "peek")
        second = await promo_service.check_validity(db, "PEEK")

        assert first.valid and second.valid
        assert await _uses(db, "PEEK") == 0

    @pytest.mark.asyncio
    async def test_reports_reason(self, db):
        await create_promo_code(db, code="FULL", max_uses=1, current_uses=1)
        await create_promo_code(db, code="GONE", expires_in=timedelta(minutes=-5))

        assert (await promo_service.check_validity(db, "FULL")).reason == "max_uses_reached"
        assert (await promo_service.check_validity(db, "GONE")).reason == "not_found_or_expired"
        assert (await promo_service.check_validity(db, "MISSING")).reason == "not_found_or_expired"


class TestGenerateCodes:
    @pytest.mark.asyncio
    async def test_generates_unique_prefixed_codes(self, db):
        codes = await promo_service.generate_codes(
            db, 5, GenerateOptions(prefix="summer", max_uses=3, campaign="summer-24")
        )

        assert len(codes) == 5
        assert len(set(codes)) == 5
        for code in codes:
            prefix, suffix = code.split("-")
            assert prefix == "SUMMER"
            assert len(suffix) == 8
            int(suffix, 16)

        result = await db.execute(select(PromoCode).where(PromoCode.code.in_(codes)))
        stored = result.scalars().all()
        assert {p.max_uses for p in stored} == {3}
        assert {p.campaign for p in stored} == {"summer-24"}

    @pytest.mark.asyncio
    async def test_collision_is_retried_without_losing_a_slot(self, db, monkeypatch):
        await create_promo_code(db, code="PROMO-AAAAAAAA")
        tokens = chain(["aaaaaaaa", "aaaaaaaa", "bbbbbbbb"], repeat("cccccccc"))
        monkeypatch.setattr(promo_service.secrets, "token_hex", lambda n: next(tokens))

        codes = await promo_service.generate_codes(db, 2)

        assert codes == ["PROMO-BBBBBBBB", "PROMO-CCCCCCCC"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, db, monkeypatch):
        await create_promo_code(db, code="PROMO-AAAAAAAA")
        monkeypatch.setattr(promo_service.secrets, "token_hex", lambda n: "aaaaaaaa")

        with pytest.raises(RuntimeError):
            await promo_service.generate_codes(db, 1)

    @pytest.mark.asyncio
    async def test_rejects_bad_options(self, db):
        with pytest.raises(InvalidAmountError):
            await promo_service.generate_codes(db, 0)
        with pytest.raises(InvalidAmountError):
            await promo_service.generate_codes(db, 1, GenerateOptions(type="lifetime"))
        with pytest.raises(InvalidAmountError):
            await promo_service.generate_codes(db, 1, GenerateOptions(max_uses=0))

    @pytest.mark.asyncio
    async def test_rejects_unknown_granted_plan(self, db):
        with pytest.raises(InvalidAmountError) as exc_info:
            await promo_service.generate_codes(
                db, 1, GenerateOptions(type="plan_grant", granted_plan="platinum")
            )

        assert exc_info.value.context == {"granted_plan": "platinum"}
        assert (await db.execute(select(PromoCode))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_granted_plan_is_stored_as_catalog_key(self, db):
        [code] = await promo_service.generate_codes(
            db, 1, GenerateOptions(type="plan_grant", granted_plan="Growth-Extra")
        )

        promo = (await db.execute(select(PromoCode).where(PromoCode.code == code))).scalar_one()
        assert promo.granted_plan == "growth extra"


class TestApplyEntitlement:
    @pytest.mark.asyncio
    async def test_free_period_extends_trial_from_now(self, db):
        await create_subscription(db, SHOP)
        before = utcnow()

        subscription = await promo_service.apply_entitlement(
            db, SHOP, Entitlement(code="FREE30", type="free_period", trial_days=30, discount_percent=0)
        )

        ends = quota_service.as_utc(subscription.trial_ends_at)
        assert before + timedelta(days=30) <= ends <= utcnow() + timedelta(days=30)
        assert subscription.promo_code == "FREE30"

    @pytest.mark.asyncio
    async def test_trial_extension_stacks_on_running_trial(self, db):
        subscription = await create_subscription(db, SHOP, in_trial=True)
        current_end = quota_service.as_utc(subscription.trial_ends_at)

        subscription = await promo_service.apply_entitlement(
            db, SHOP, Entitlement(code="EXTRA", type="trial_extension", trial_days=10, discount_percent=0)
        )

        assert abs(quota_service.as_utc(subscription.trial_ends_at) - (current_end + timedelta(days=10))) < timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_plan_grant_switches_plan(self, db):
        await create_subscription(db, SHOP, query_count=7)

        subscription = await promo_service.apply_entitlement(
            db,
            SHOP,
            Entitlement(code="VIP", type="plan_grant", trial_days=0, discount_percent=0, granted_plan="growth"),
        )

        assert subscription.plan == "growth"
        assert subscription.query_limit == 1500
        assert subscription.query_count == 7

    @pytest.mark.asyncio
    async def test_plan_grant_defaults_to_enterprise(self, db):
        await create_subscription(db, SHOP)

        subscription = await promo_service.apply_entitlement(
            db, SHOP, Entitlement(code="VIP", type="plan_grant", trial_days=0, discount_percent=0)
        )

        assert subscription.plan == "enterprise"

    @pytest.mark.asyncio
    async def test_discount_tracking_only_records_discount(self, db):
        created = await create_subscription(db, SHOP)
        trial_end = quota_service.as_utc(created.trial_ends_at)

        subscription = await promo_service.apply_entitlement(
            db, SHOP, Entitlement(code="SAVE20", type="discount_tracking", trial_days=0, discount_percent=20)
        )

        assert subscription.discount_percent == 20
        assert quota_service.as_utc(subscription.trial_ends_at) == trial_end
        assert subscription.plan == "starter"


class TestRedeemForShop:
    @pytest.mark.asyncio
    async def test_redeem_applies_entitlement(self, db):
        await create_promo_code(db, code="GRANT", type="plan_grant", granted_plan="professional")

        entitlement, subscription = await promo_service.redeem_for_shop(db, SHOP, "grant")

        assert entitlement.code == "GRANT"
        assert subscription.plan == "professional"

    @pytest.mark.asyncio
    async def test_invalid_code_raises(self, db):
        with pytest.raises(PromoInvalidError) as exc_info:
            await promo_service.redeem_for_shop(db, SHOP, "BOGUS")

        assert exc_info.value.reason == "not_found_or_expired"
        assert await quota_service.get_subscription(db, SHOP) is None

    @pytest.mark.asyncio
    async def test_failed_apply_rolls_back_the_use(self, db):
        await create_subscription(db, SHOP)
        await create_promo_code(db, code="PLATINUM", type="plan_grant", granted_plan="platinum")

        with pytest.raises(InvalidAmountError):
            await promo_service.redeem_for_shop(db, SHOP, "platinum")

        assert await _uses(db, "PLATINUM") == 0
        subscription = await quota_service.require_subscription(db, SHOP)
        assert subscription.plan == "starter"
        assert subscription.promo_code is None

    @pytest.mark.asyncio
    async def test_failed_apply_does_not_create_subscription(self, db):
        await create_promo_code(db, code="PLATINUM", type="plan_grant", granted_plan="platinum")

        with pytest.raises(InvalidAmountError):
            await promo_service.redeem_for_shop(db, SHOP, "PLATINUM")

        assert await _uses(db, "PLATINUM") == 0
        assert await quota_service.get_subscription(db, SHOP) is None


class TestAllowlist:
    @pytest.mark.asyncio
    async def test_add_check_remove(self, db):
        await promo_service.add_shop(
            db, " Partner.myshopify.com ", promo_type="trial_extension", trial_days=60, reason="agency"
        )

        status = await promo_service.check_shop(db, "partner.myshopify.com")
        assert status["on_allowlist"]
        assert status["promo"]["type"] == "trial_extension"
        assert status["promo"]["trial_days"] == 60

        assert await promo_service.remove_shop(db, "PARTNER.myshopify.com")
        assert (await promo_service.check_shop(db, "partner.myshopify.com")) == {"on_allowlist": False}
        assert not await promo_service.remove_shop(db, "partner.myshopify.com")

    @pytest.mark.asyncio
    async def test_add_is_an_upsert(self, db):
        await promo_service.add_shop(db, "beta.myshopify.com", discount_percent=10)
        await promo_service.add_shop(db, "beta.myshopify.com", discount_percent=25)

        status = await promo_service.check_shop(db, "beta.myshopify.com")
        assert status["promo"]["discount_percent"] == 25

    @pytest.mark.asyncio
    async def test_expired_entry_is_ignored(self, db):
        await promo_service.add_shop(db, "late.myshopify.com", expires_in_days=-1)

        assert not (await promo_service.check_shop(db, "late.myshopify.com"))["on_allowlist"]

    @pytest.mark.asyncio
    async def test_unknown_promo_type(self, db):
        with pytest.raises(InvalidAmountError):
            await promo_service.add_shop(db, "x.myshopify.com", promo_type="forever")
