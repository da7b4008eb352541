from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.database import get_db
from tokenledger.core.dependencies import get_shop, require_admin
from tokenledger.schemas.subscription import (
    ConsumeRequest,
    ConsumeResponse,
    PlanChangeRequest,
    PlanResponse,
    QuotaCheckRequest,
    QuotaCheckResponse,
)
from tokenledger.services import quota_service

router = APIRouter(prefix="/plan", tags=["plan"])


@router.get("", response_model=PlanResponse)
async def get_plan(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    subscription = await quota_service.get_or_create_subscription(db, shop)
    return PlanResponse(**quota_service.build_plan_view(subscription))


@router.post("/check", response_model=QuotaCheckResponse)
async def check_plan_quota(
    request: QuotaCheckRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Report whether the next metered call would pass the gate. Nothing is consumed."""
    subscription = await quota_service.get_or_create_subscription(db, shop)
    decision = quota_service.check_quota(subscription)
    provider_allowed = None
    if request.provider:
        provider_allowed = quota_service.check_provider_allowed(subscription, request.provider)
    return QuotaCheckResponse(
        allowed=decision.allowed,
        in_trial=decision.in_trial,
        query_count=decision.query_count,
        query_limit=decision.query_limit,
        reason=decision.reason,
        provider_allowed=provider_allowed,
    )


@router.post("/consume", response_model=ConsumeResponse)
async def consume_quota(
    request: ConsumeRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    query_count = await quota_service.consume(db, shop, request_key=request.request_key)
    subscription = await quota_service.require_subscription(db, shop)
    return ConsumeResponse(query_count=query_count, query_limit=subscription.query_limit)


@router.post("/change", response_model=PlanResponse, dependencies=[Depends(require_admin)])
async def change_plan(
    request: PlanChangeRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    subscription = await quota_service.change_plan(db, shop, request.plan)
    return PlanResponse(**quota_service.build_plan_view(subscription))
