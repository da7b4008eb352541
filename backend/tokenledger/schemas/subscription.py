from datetime import datetime

from pydantic import BaseModel


class PlanResponse(BaseModel):
    shop: str
    plan: str
    plan_key: str | None = None
    query_limit: int
    product_limit: int
    query_count: int
    providers_allowed: list[str]
    models_suggested: list[str]
    in_trial: bool
    trial_ends_at: datetime | None = None
    discount_percent: int = 0


class QuotaCheckRequest(BaseModel):
    provider: str | None = None


class QuotaCheckResponse(BaseModel):
    allowed: bool
    in_trial: bool
    query_count: int
    query_limit: int
    reason: str | None = None
    provider_allowed: bool | None = None


class ConsumeRequest(BaseModel):
    request_key: str | None = None


class ConsumeResponse(BaseModel):
    query_count: int
    query_limit: int


class PlanChangeRequest(BaseModel):
    plan: str
