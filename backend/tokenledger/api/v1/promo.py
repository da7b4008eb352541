from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.database import get_db
from tokenledger.core.dependencies import get_shop, normalize_shop, require_admin
from tokenledger.schemas.promo import (
    AllowlistAddRequest,
    AllowlistCheckResponse,
    EntitlementResponse,
    PromoCheckResponse,
    PromoCodeRequest,
    PromoGenerateRequest,
    PromoGenerateResponse,
    PromoRedeemResponse,
)
from tokenledger.schemas.subscription import PlanResponse
from tokenledger.services import promo_service, quota_service
from tokenledger.services.promo_service import Entitlement, GenerateOptions

router = APIRouter(prefix="/promo", tags=["promo"])


def _entitlement_response(entitlement: Entitlement) -> EntitlementResponse:
    return EntitlementResponse(
        code=entitlement.code,
        type=entitlement.type,
        trial_days=entitlement.trial_days,
        discount_percent=entitlement.discount_percent,
        campaign=entitlement.campaign,
        granted_plan=entitlement.granted_plan,
    )


@router.post("/check", response_model=PromoCheckResponse)
async def check_promo(
    request: PromoCodeRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    result = await promo_service.check_validity(db, request.code)
    return PromoCheckResponse(
        valid=result.valid,
        reason=result.reason,
        error=result.error,
        entitlement=_entitlement_response(result.entitlement) if result.entitlement else None,
    )


@router.post("/redeem", response_model=PromoRedeemResponse)
async def redeem_promo(
    request: PromoCodeRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    entitlement, subscription = await promo_service.redeem_for_shop(db, shop, request.code)
    return PromoRedeemResponse(
        entitlement=_entitlement_response(entitlement),
        plan=PlanResponse(**quota_service.build_plan_view(subscription)),
    )


@router.post(
    "/generate",
    response_model=PromoGenerateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def generate_promo_codes(
    request: PromoGenerateRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    options = GenerateOptions(
        prefix=request.prefix,
        type=request.type,
        trial_days=request.trial_days,
        discount_percent=request.discount_percent,
        granted_plan=request.granted_plan,
        max_uses=request.max_uses,
        expires_in_days=request.expires_in_days,
        campaign=request.campaign,
        notes=request.notes,
        created_by="admin-api",
    )
    codes = await promo_service.generate_codes(db, request.count, options)
    return PromoGenerateResponse(codes=codes, count=len(codes))


@router.get("/allowlist", response_model=AllowlistCheckResponse)
async def check_allowlist(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return AllowlistCheckResponse(**await promo_service.check_shop(db, shop))


@router.post(
    "/allowlist",
    response_model=AllowlistCheckResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def add_to_allowlist(
    request: AllowlistAddRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    await promo_service.add_shop(
        db,
        request.shop,
        promo_type=request.promo_type,
        trial_days=request.trial_days,
        discount_percent=request.discount_percent,
        expires_in_days=request.expires_in_days,
        reason=request.reason,
        campaign=request.campaign,
        added_by="admin-api",
        notes=request.notes,
    )
    return AllowlistCheckResponse(**await promo_service.check_shop(db, request.shop))


@router.delete(
    "/allowlist/{shop}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def remove_from_allowlist(
    shop: str,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    if not await promo_service.remove_shop(db, normalize_shop(shop)):
        raise HTTPException(status_code=404, detail="Shop not on allowlist")
