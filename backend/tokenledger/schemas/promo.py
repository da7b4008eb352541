from datetime import datetime

from pydantic import BaseModel, Field

from tokenledger.models.promo_code import PROMO_TYPES
from tokenledger.schemas.subscription import PlanResponse


class PromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class EntitlementResponse(BaseModel):
    code: str
    type: str
    trial_days: int
    discount_percent: int
    campaign: str | None = None
    granted_plan: str | None = None


class PromoCheckResponse(BaseModel):
    valid: bool
    reason: str | None = None
    error: str | None = None
    entitlement: EntitlementResponse | None = None


class PromoGenerateRequest(BaseModel):
    count: int = Field(ge=1)
    prefix: str = Field(default="PROMO", min_length=1, max_length=20)
    type: str = Field(default="free_period", pattern="^(" + "|".join(PROMO_TYPES) + ")$")
    trial_days: int = Field(default=30, ge=0)
    discount_percent: int = Field(default=0, ge=0, le=100)
    granted_plan: str | None = None
    max_uses: int = Field(default=1, ge=1)
    expires_in_days: int = Field(default=90, ge=1)
    campaign: str | None = None
    notes: str | None = None


class PromoGenerateResponse(BaseModel):
    codes: list[str]
    count: int


class PromoRedeemResponse(BaseModel):
    entitlement: EntitlementResponse
    plan: PlanResponse


class AllowlistPromo(BaseModel):
    type: str
    trial_days: int
    discount_percent: int
    expires_at: datetime
    campaign: str | None = None
    reason: str | None = None


class AllowlistCheckResponse(BaseModel):
    on_allowlist: bool
    promo: AllowlistPromo | None = None


class AllowlistAddRequest(BaseModel):
    shop: str = Field(min_length=1, max_length=255)
    promo_type: str = Field(default="free_period", pattern="^(" + "|".join(PROMO_TYPES) + ")$")
    trial_days: int = Field(default=30, ge=0)
    discount_percent: int = Field(default=0, ge=0, le=100)
    expires_in_days: int = Field(default=30, ge=1)
    reason: str | None = None
    campaign: str | None = None
    notes: str | None = None
