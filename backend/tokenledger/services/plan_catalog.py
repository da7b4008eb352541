"""Static plan catalog: call quota, product limit and AI vendors per tier."""

from __future__ import annotations

PLANS: dict[str, dict] = {
    "starter": {
        "name": "Starter",
        "price_usd": 10,
        "query_limit": 50,
        "product_limit": 150,
        "providers_allowed": ["deepseek", "llama"],
    },
    "professional": {
        "name": "Professional",
        "price_usd": 39,
        "query_limit": 600,
        "product_limit": 300,
        "providers_allowed": ["openai", "llama", "deepseek"],
    },
    "growth": {
        "name": "Growth",
        "price_usd": 59,
        "query_limit": 1500,
        "product_limit": 1000,
        "providers_allowed": ["claude", "openai", "gemini"],
    },
    "growth extra": {
        "name": "Growth Extra",
        "price_usd": 119,
        "query_limit": 4000,
        "product_limit": 2000,
        "providers_allowed": ["claude", "openai", "gemini", "llama"],
    },
    "enterprise": {
        "name": "Enterprise",
        "price_usd": 299,
        "query_limit": 10000,
        "product_limit": 10000,
        "providers_allowed": ["claude", "openai", "gemini", "deepseek", "llama"],
    },
}

# Suggested OpenRouter models per vendor
DEFAULT_MODELS: dict[str, list[str]] = {
    "openai": ["openai/gpt-4o-mini", "openai/o3-mini"],
    "claude": ["anthropic/claude-3.5-sonnet", "anthropic/claude-3-haiku"],
    "gemini": ["google/gemini-1.5-flash", "google/gemini-1.5-pro"],
    "deepseek": ["deepseek/deepseek-chat"],
    "llama": ["meta-llama/llama-3.1-8b-instruct", "meta-llama/llama-3.1-70b-instruct"],
}

_VENDOR_ALIASES = {
    "anthropic": "claude",
    "google": "gemini",
    "meta-llama": "llama",
    "meta": "llama",
}

_PLAN_ALIASES = {
    "growth_extra": "growth extra",
    "growthextra": "growth extra",
    "growth-extra": "growth extra",
}


def resolve_plan_key(plan: str | None) -> str | None:
    key = (plan or "").strip().lower()
    if not key:
        return None
    if key in PLANS:
        return key
    return _PLAN_ALIASES.get(key)


def get_plan_config(plan: str | None) -> dict | None:
    key = resolve_plan_key(plan)
    if key is None:
        return None
    return {"key": key, **PLANS[key]}


def vendor_from_model(model: str | None) -> str:
    """Map ``anthropic/claude-3.5-sonnet`` style ids (or bare vendors) to a vendor key."""
    vendor = (model or "").split("/")[0].strip().lower()
    return _VENDOR_ALIASES.get(vendor, vendor)


def allowed_models_for_plan(plan: str | None) -> list[str]:
    config = get_plan_config(plan)
    if not config:
        return []
    models: list[str] = []
    for vendor in config["providers_allowed"]:
        models.extend(DEFAULT_MODELS.get(vendor, []))
    return models
