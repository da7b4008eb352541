import secrets
from typing import Annotated

import structlog
from fastapi import Header, HTTPException, Query, Request, status

from tokenledger.core.config import settings

logger = structlog.get_logger()

SHOP_HEADER = "X-Shopify-Shop-Domain"
ADMIN_KEY_HEADER = "X-Admin-Key"


def normalize_shop(shop: str) -> str:
    return shop.strip().lower()


async def get_shop(
    request: Request,
    shop_header: Annotated[str | None, Header(alias=SHOP_HEADER)] = None,
    shop: Annotated[str | None, Query()] = None,
) -> str:
    """Resolve the shop domain from the Shopify header or ``?shop=``."""
    raw = shop_header or shop or ""
    value = normalize_shop(raw)
    if not value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop")

    structlog.contextvars.bind_contextvars(shop=value)
    request.state.shop = value
    return value


async def require_admin(
    admin_key: Annotated[str | None, Header(alias=ADMIN_KEY_HEADER)] = None,
) -> None:
    """Guard back-office endpoints with the shared ``ADMIN_API_KEY``."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is disabled")
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {ADMIN_KEY_HEADER} header",
        )
    if not secrets.compare_digest(admin_key, settings.ADMIN_API_KEY):
        logger.warning("auth.admin_key_rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
