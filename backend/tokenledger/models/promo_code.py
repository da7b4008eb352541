from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tokenledger.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

PROMO_TYPES = ("trial_extension", "free_period", "plan_grant", "discount_tracking")


class PromoCode(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Marketing code with a usage cap and an expiry.

    ``code`` is stored normalized (trimmed, upper case). The CHECK
    constraint backs the conditional increment in the redeemer.
    """

    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("current_uses <= max_uses", name="uses_within_cap"),
        CheckConstraint("current_uses >= 0", name="uses_non_negative"),
    )

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    trial_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    granted_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)

    max_uses: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    campaign: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class PromoAllowlistEntry(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Manual per-shop promo grant (partner agencies, beta testers, support cases)."""

    __tablename__ = "promo_allowlist"

    shop: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    promo_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign: Mapped[str | None] = mapped_column(String(100), nullable=True)
    added_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
