"""Token pricing: USD <-> token conversion, feature costs and the reservation margin.

Purchases are split into an app revenue share and a token budget share.
Only the token budget buys provider tokens; the split itself is recorded
for reporting and never touches the balance.
"""

from __future__ import annotations

import math
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from tokenledger.core.config import settings
from tokenledger.core.errors import InvalidAmountError

_CENTS = Decimal("0.01")

# Feature -> token cost table. ``per_language`` applies to every language
# beyond the first, ``per_product`` to every product in the batch.
FEATURE_COSTS: dict[str, dict] = {
    "ai-seo-product-basic": {
        "base": 1000,
        "per_language": 800,
        "description": "AI SEO optimization for product",
    },
    "ai-seo-product-enhanced": {
        "base": 2000,
        "per_language": 1500,
        "description": "Enhanced AI SEO with rich attributes",
    },
    "ai-seo-collection": {
        "base": 1500,
        "per_language": 1200,
        "description": "AI SEO optimization for collection",
    },
    "ai-testing-simulation": {
        "base": 500,
        "description": "AI testing and simulation",
    },
    "ai-schema-advanced": {
        "base": 3000,
        "per_product": 2500,
        "description": "Advanced schema data generation",
    },
    "ai-sitemap-optimized": {
        "base": 5000,
        "per_product": 100,
        "description": "AI-optimized sitemap generation",
    },
}

# Share of the plan price converted into included tokens each period
PLAN_INCLUDED_USD: dict[str, Decimal] = {
    "growth extra": Decimal("35.70"),
    "enterprise": Decimal("89.70"),
}


def _rate_per_token() -> Decimal:
    return Decimal(str(settings.PROVIDER_RATE_PER_1M_TOKENS)) / 1_000_000


def _to_cents(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def split_revenue(usd_amount: Decimal | float | int) -> tuple[Decimal, Decimal]:
    """Return ``(app_revenue_share, token_budget_share)`` for a purchase."""
    amount = Decimal(str(usd_amount))
    app_share = _to_cents(amount * Decimal(str(settings.APP_REVENUE_SHARE)))
    budget_share = _to_cents(amount * Decimal(str(settings.TOKEN_BUDGET_SHARE)))
    return app_share, budget_share


def calculate_tokens(usd_amount: Decimal | float | int) -> int:
    """Tokens bought by ``usd_amount`` once the app share is taken out."""
    token_budget = Decimal(str(usd_amount)) * Decimal(str(settings.TOKEN_BUDGET_SHARE))
    return int(token_budget / _rate_per_token())


def calculate_cost(tokens: int) -> Decimal:
    """Customer price in USD for ``tokens``, rounded up to the cent."""
    provider_cost = tokens * _rate_per_token()
    total = provider_cost / Decimal(str(settings.TOKEN_BUDGET_SHARE))
    return total.quantize(_CENTS, rounding=ROUND_CEILING)


def is_valid_purchase_amount(usd_amount: Decimal | float | int) -> bool:
    amount = Decimal(str(usd_amount))
    if amount < settings.PURCHASE_MIN_USD or amount > settings.PURCHASE_MAX_USD:
        return False
    return amount % settings.PURCHASE_INCREMENT_USD == 0


def calculate_feature_cost(feature: str, languages: int = 1, product_count: int = 0) -> int:
    cost = FEATURE_COSTS.get(feature)
    if cost is None:
        raise InvalidAmountError(f"Unknown feature: {feature}", feature=feature)

    total = cost.get("base", 0)
    if cost.get("per_language") and languages > 1:
        total += (languages - 1) * cost["per_language"]
    if cost.get("per_product") and product_count > 0:
        total += product_count * cost["per_product"]
    return total


def estimate_with_margin(estimated_tokens: int, margin: float | None = None) -> int:
    """Pad a cost estimate with the reservation safety margin, rounding up."""
    if estimated_tokens < 0:
        raise InvalidAmountError("Estimate must not be negative")
    if margin is None:
        margin = settings.RESERVATION_SAFETY_MARGIN
    return math.ceil(round(estimated_tokens * (1 + margin), 6))


def get_included_tokens(plan: str | None) -> dict:
    """Tokens included with a plan each billing period (zero for most tiers)."""
    usd = PLAN_INCLUDED_USD.get((plan or "").strip().lower())
    if not usd:
        return {"usd_amount": Decimal("0"), "tokens": 0}
    return {"usd_amount": usd, "tokens": calculate_tokens(usd)}
