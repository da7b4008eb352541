from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class LastPurchase(BaseModel):
    usd_amount: Decimal | None = None
    tokens: int | None = None
    date: datetime | None = None
    external_charge_id: str | None = None


class BalanceResponse(BaseModel):
    shop: str
    balance: int
    total_purchased: int
    total_used: int
    reserved: int
    open_reservations: int
    last_purchase: LastPurchase | None = None


class UsageEntryResponse(BaseModel):
    id: str
    feature: str
    tokens_used: int
    related_entity_id: str | None = None
    metadata: dict | None = None
    reservation_id: str | None = None
    status: str | None = None
    estimated_amount: int | None = None
    actual_tokens_used: int | None = None
    refunded_amount: int | None = None
    reconciliation_shortfall: int | None = None
    finalized_at: datetime | None = None
    created_at: datetime


class PurchaseResponse(BaseModel):
    id: str
    usd_amount: Decimal
    app_revenue_share: Decimal
    token_budget_share: Decimal
    tokens_received: int
    external_charge_id: str | None = None
    status: str
    created_at: datetime


class ReserveRequest(BaseModel):
    estimated_tokens: int = Field(gt=0)
    feature: str = Field(min_length=1, max_length=100)
    apply_margin: bool = True
    related_entity_id: str | None = None
    metadata: dict | None = None


class ReserveResponse(BaseModel):
    reservation_id: str
    reserved: int
    balance: int


class FinalizeRequest(BaseModel):
    actual_tokens_used: int = Field(ge=0)


class FinalizeResponse(BaseModel):
    reservation_id: str
    found: bool
    already_finalized: bool
    estimated_amount: int
    actual_tokens_used: int
    refunded_amount: int
    extra_deducted: int
    shortfall: int
    balance: int | None = None


class DeductRequest(BaseModel):
    amount: int = Field(gt=0)
    feature: str = Field(min_length=1, max_length=100)
    related_entity_id: str | None = None
    metadata: dict | None = None


class DeductResponse(BaseModel):
    balance: int


class PurchaseRequest(BaseModel):
    usd_amount: Decimal = Field(gt=0)
    external_charge_id: str | None = None
    tokens_received: int | None = Field(default=None, gt=0)


class EstimateResponse(BaseModel):
    feature: str
    tokens: int
    tokens_with_margin: int
    usd_cost: Decimal
    balance: int
    sufficient: bool
