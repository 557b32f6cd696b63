"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# JSONB on PostgreSQL, plain JSON elsewhere
FeaturesJSON = JSON().with_variant(JSONB(), "postgresql")


class Entitlement(Base):
    """
    ORM model for entitlements table.

    One row per user: plan, status, balances and feature flags. Balances are
    only ever changed through single conditional UPDATE statements.
    """

    __tablename__ = "entitlements"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Plan (legacy labels free/standard are folded into metered on read)
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="metered")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Balances
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    periodic_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_period_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Capability flags and request limit
    features: Mapped[dict[str, Any]] = mapped_column(FeaturesJSON, nullable=False, default=dict)

    # Time-boxed grants
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payment processor linkage
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan_event_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint(
            "periodic_allowance >= 0", name="ck_periodic_allowance_non_negative"
        ),
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'inactive')",
            name="ck_entitlement_status",
        ),
        UniqueConstraint("user_id", name="uq_entitlements_user_id"),
        Index("idx_entitlements_customer", "external_customer_id"),
        Index("idx_entitlements_plan_status", "plan", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Entitlement(user_id={self.user_id}, plan={self.plan}, "
            f"status={self.status}, allowance={self.periodic_allowance}, "
            f"balance={self.credit_balance})>"
        )


class CreditPurchase(Base):
    """
    ORM model for credit_purchases table.

    A checkout for a credit pack; transitions pending -> completed exactly once.
    """

    __tablename__ = "credit_purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    pack_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    credits_granted: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("credits_granted > 0", name="ck_purchase_credits_positive"),
        CheckConstraint("amount_paid_minor >= 0", name="ck_purchase_amount_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'completed')", name="ck_purchase_status"
        ),
        UniqueConstraint("external_payment_id", name="uq_credit_purchases_payment_id"),
        Index("idx_credit_purchases_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditPurchase(id={self.id}, user_id={self.user_id}, "
            f"credits={self.credits_granted}, status={self.status})>"
        )


class CreditGrant(Base):
    """
    ORM model for credit_grants table.

    Ledger of balance increments; the unique idempotency key makes each grant
    apply at most once.
    """

    __tablename__ = "credit_grants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_grant_amount_positive"),
        UniqueConstraint("idempotency_key", name="uq_credit_grants_idempotency"),
        Index("idx_credit_grants_user", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditGrant(user_id={self.user_id}, amount={self.amount}, "
            f"key={self.idempotency_key})>"
        )


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    Append-only journal of billable actions, used for soft caps and analytics.
    """

    __tablename__ = "usage_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_usage_records_user_action_created", "user_id", "action_type", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UsageRecord(user_id={self.user_id}, action={self.action_type})>"


class DownloadQuota(Base):
    """
    ORM model for download_quotas table.

    One counter per generated artifact; never shared across artifacts.
    """

    __tablename__ = "download_quotas"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    artifact_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    downloads_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("downloads_remaining >= 0", name="ck_downloads_non_negative"),
        UniqueConstraint("artifact_id", name="uq_download_quotas_artifact"),
        Index("idx_download_quotas_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DownloadQuota(artifact_id={self.artifact_id}, owner_id={self.owner_id}, "
            f"remaining={self.downloads_remaining})>"
        )


class WebhookEvent(Base):
    """
    ORM model for webhook_events table.

    Ledger of processed payment processor events; a unique event id makes
    every event apply at most once.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False, default="processed")
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        Index("idx_webhook_events_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type})>"
