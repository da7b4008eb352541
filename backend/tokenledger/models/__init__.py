from tokenledger.models.base import Base
from tokenledger.models.job import Job
from tokenledger.models.promo_code import PromoAllowlistEntry, PromoCode
from tokenledger.models.subscription import QuotaConsumption, Subscription
from tokenledger.models.token_account import TokenAccount, TokenPurchase, TokenUsageEntry

__all__ = [
    "Base",
    "Job",
    "PromoCode", "PromoAllowlistEntry",
    "Subscription", "QuotaConsumption",
    "TokenAccount", "TokenPurchase", "TokenUsageEntry",
]
