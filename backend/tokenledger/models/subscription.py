import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class Subscription(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Plan, call quota and trial window for a shop."""

    __tablename__ = "subscriptions"

    shop: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    plan: Mapped[str] = mapped_column(String(50), nullable=False)

    query_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    query_limit: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    product_limit: Mapped[int] = mapped_column(Integer, default=150, nullable=False)
    allowed_providers: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Promo bookkeeping
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class QuotaConsumption(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Marks a logical request as already counted against the quota."""

    __tablename__ = "quota_consumptions"
    __table_args__ = (
        UniqueConstraint("subscription_id", "request_key", name="uq_quota_consumptions_request"),
    )

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_key: Mapped[str] = mapped_column(String(255), nullable=False)
