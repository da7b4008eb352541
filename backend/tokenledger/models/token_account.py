from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenledger.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

PURCHASE_STATUSES = ("pending", "completed", "failed", "refunded")

RESERVATION_RESERVED = "reserved"
RESERVATION_FINALIZED = "finalized"


class TokenAccount(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Per-shop token ledger.

    ``balance`` is spendable tokens. ``total_purchased`` and ``total_used``
    are lifetime counters and only ever grow. The CHECK constraint keeps a
    negative balance from ever being committed.
    """

    __tablename__ = "token_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="balance_non_negative"),)

    shop: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_purchased: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Snapshot of the most recent purchase
    last_purchase_usd: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    last_purchase_tokens: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_purchase_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    purchases: Mapped[list["TokenPurchase"]] = relationship(
        "TokenPurchase", back_populates="account", order_by="TokenPurchase.created_at"
    )
    usage_entries: Mapped[list["TokenUsageEntry"]] = relationship(
        "TokenUsageEntry", back_populates="account", order_by="TokenUsageEntry.created_at"
    )


class TokenPurchase(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "token_purchases"
    __table_args__ = (
        UniqueConstraint("account_id", "external_charge_id", name="uq_token_purchases_account_charge"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("token_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    usd_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    app_revenue_share: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    token_budget_share: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tokens_received: Mapped[int] = mapped_column(BigInteger, nullable=False)
    external_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)

    account: Mapped[TokenAccount] = relationship("TokenAccount", back_populates="purchases")


class TokenUsageEntry(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One debit against an account.

    Immediate deductions leave ``status`` NULL. Entries opened by a
    reservation move ``reserved -> finalized`` exactly once; while reserved
    ``tokens_used`` holds the estimate, afterwards the actual usage.
    """

    __tablename__ = "token_usage_entries"

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("token_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    related_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    # Reservation lifecycle
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, unique=True, nullable=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    estimated_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actual_tokens_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refunded_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reconciliation_shortfall: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    account: Mapped[TokenAccount] = relationship("TokenAccount", back_populates="usage_entries")
