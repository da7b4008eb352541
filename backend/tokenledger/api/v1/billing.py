import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.config import settings
from tokenledger.core.database import get_db
from tokenledger.core.dependencies import get_shop, require_admin
from tokenledger.core.errors import InvalidAmountError
from tokenledger.models.token_account import TokenPurchase, TokenUsageEntry
from tokenledger.schemas.common import PaginatedResponse
from tokenledger.schemas.ledger import (
    BalanceResponse,
    DeductRequest,
    DeductResponse,
    EstimateResponse,
    FinalizeRequest,
    FinalizeResponse,
    PurchaseRequest,
    PurchaseResponse,
    ReserveRequest,
    ReserveResponse,
    UsageEntryResponse,
)
from tokenledger.services import ledger_service, token_pricing
from tokenledger.services.ledger_service import FinalizeResult

router = APIRouter(prefix="/billing", tags=["billing"])


def _usage_response(entry: TokenUsageEntry) -> UsageEntryResponse:
    return UsageEntryResponse(
        id=str(entry.id),
        feature=entry.feature,
        tokens_used=entry.tokens_used,
        related_entity_id=entry.related_entity_id,
        metadata=entry.metadata_,
        reservation_id=str(entry.reservation_id) if entry.reservation_id else None,
        status=entry.status,
        estimated_amount=entry.estimated_amount,
        actual_tokens_used=entry.actual_tokens_used,
        refunded_amount=entry.refunded_amount,
        reconciliation_shortfall=entry.reconciliation_shortfall,
        finalized_at=entry.finalized_at,
        created_at=entry.created_at,
    )


def _purchase_response(purchase: TokenPurchase) -> PurchaseResponse:
    return PurchaseResponse(
        id=str(purchase.id),
        usd_amount=purchase.usd_amount,
        app_revenue_share=purchase.app_revenue_share,
        token_budget_share=purchase.token_budget_share,
        tokens_received=purchase.tokens_received,
        external_charge_id=purchase.external_charge_id,
        status=purchase.status,
        created_at=purchase.created_at,
    )


def _finalize_response(result: FinalizeResult) -> FinalizeResponse:
    return FinalizeResponse(
        reservation_id=str(result.reservation_id),
        found=result.found,
        already_finalized=result.already_finalized,
        estimated_amount=result.estimated_amount,
        actual_tokens_used=result.actual_tokens_used,
        refunded_amount=result.refunded_amount,
        extra_deducted=result.extra_deducted,
        shortfall=result.shortfall,
        balance=result.balance,
    )


def _pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size if page_size > 0 else 0


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    summary = await ledger_service.get_balance_summary(db, shop)
    return BalanceResponse(**summary)


@router.get("/usage", response_model=PaginatedResponse[UsageEntryResponse])
async def list_usage(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    entries, total = await ledger_service.list_usage(db, shop, page=page, page_size=page_size)
    return PaginatedResponse(
        items=[_usage_response(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
        pages=_pages(total, page_size),
    )


@router.get("/purchases", response_model=PaginatedResponse[PurchaseResponse])
async def list_purchases(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    purchases, total = await ledger_service.list_purchases(db, shop, page=page, page_size=page_size)
    return PaginatedResponse(
        items=[_purchase_response(p) for p in purchases],
        total=total,
        page=page,
        page_size=page_size,
        pages=_pages(total, page_size),
    )


@router.post("/reservations", response_model=ReserveResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    request: ReserveRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    amount = (
        token_pricing.estimate_with_margin(request.estimated_tokens)
        if request.apply_margin
        else request.estimated_tokens
    )
    reservation_id = await ledger_service.reserve(
        db,
        shop,
        amount,
        request.feature,
        metadata=request.metadata,
        related_entity_id=request.related_entity_id,
    )
    account = await ledger_service.get_or_create(db, shop)
    return ReserveResponse(reservation_id=str(reservation_id), reserved=amount, balance=account.balance)


@router.post("/reservations/{reservation_id}/finalize", response_model=FinalizeResponse)
async def finalize_reservation(
    reservation_id: uuid.UUID,
    request: FinalizeRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    result = await ledger_service.finalize(db, shop, reservation_id, request.actual_tokens_used)
    return _finalize_response(result)


@router.post("/reservations/{reservation_id}/cancel", response_model=FinalizeResponse)
async def cancel_reservation(
    reservation_id: uuid.UUID,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    result = await ledger_service.cancel(db, shop, reservation_id)
    return _finalize_response(result)


@router.post("/deduct", response_model=DeductResponse)
async def deduct_tokens(
    request: DeductRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    balance = await ledger_service.deduct(
        db,
        shop,
        request.amount,
        request.feature,
        metadata=request.metadata,
        related_entity_id=request.related_entity_id,
    )
    return DeductResponse(balance=balance)


@router.post(
    "/purchases",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def record_purchase(
    request: PurchaseRequest,
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Credit a confirmed payment. Called by the billing webhook handler."""
    if not token_pricing.is_valid_purchase_amount(request.usd_amount):
        raise InvalidAmountError(
            f"Purchase amount must be a multiple of ${settings.PURCHASE_INCREMENT_USD} "
            f"between ${settings.PURCHASE_MIN_USD} and ${settings.PURCHASE_MAX_USD}",
            usd_amount=str(request.usd_amount),
        )
    tokens = request.tokens_received or token_pricing.calculate_tokens(request.usd_amount)
    purchase = await ledger_service.add_purchase(
        db,
        shop,
        request.usd_amount,
        tokens,
        external_charge_id=request.external_charge_id,
    )
    return _purchase_response(purchase)


@router.get("/estimate", response_model=EstimateResponse)
async def estimate_feature(
    shop: Annotated[str, Depends(get_shop)],
    db: Annotated[AsyncSession, Depends(get_db)],
    feature: str = Query(..., min_length=1),
    languages: int = Query(1, ge=1),
    product_count: int = Query(0, ge=0),
):
    tokens = token_pricing.calculate_feature_cost(feature, languages=languages, product_count=product_count)
    with_margin = token_pricing.estimate_with_margin(tokens)
    account = await ledger_service.get_or_create(db, shop)
    return EstimateResponse(
        feature=feature,
        tokens=tokens,
        tokens_with_margin=with_margin,
        usd_cost=token_pricing.calculate_cost(tokens),
        balance=account.balance,
        sufficient=ledger_service.has_sufficient_balance(account, with_margin),
    )
