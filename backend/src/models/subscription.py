"""
Subscription model: local projection of Stripe subscriptions.

CRITICAL: One row per Stripe subscription id. Rows are written only by the
subscription lifecycle adapter (webhooks); everything else reads them.
"""

import enum

from sqlalchemy import Column, String, DateTime, Index

from src.models.base import Base, TimestampMixin, ServerScopedMixin


class SubscriptionStatus(str, enum.Enum):
    """Subscription status values (Stripe vocabulary, British 'cancelled')."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    PAUSED = "paused"

    @classmethod
    def from_provider(cls, value: str) -> "SubscriptionStatus":
        """
        Map a Stripe status string to SubscriptionStatus.

        Stripe spells it 'canceled'; we store 'cancelled'.

        Raises:
            ValueError: If the status is not recognised
        """
        normalized = (value or "").strip().lower()
        if normalized == "canceled":
            normalized = cls.CANCELLED.value
        return cls(normalized)


class Subscription(Base, TimestampMixin, ServerScopedMixin):
    """
    Billing relationship between a Discord user and a guild.

    DESIGN:
    - Primary key is the Stripe subscription id, so upserts can never
      produce two rows for the same billing subscription
    - status is last-write-wins, keyed by id
    - user_id is nullable: events without resolvable identity are still
      recorded, they just cannot drive role sync
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(255),
        primary_key=True,
        comment="Stripe subscription id (sub_...)"
    )
    customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe customer id (cus_...)"
    )
    user_id = Column(
        String(32),
        nullable=True,
        index=True,
        comment="Discord user id resolved from customer or subscription metadata"
    )

    status = Column(
        String(32),
        nullable=False,
        index=True,
        comment="Current subscription status"
    )
    price_id = Column(
        String(255),
        nullable=True,
        comment="Stripe price id of the first line item"
    )

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_member_status", "server_id", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, server_id={self.server_id}, "
            f"user_id={self.user_id}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        """Only 'active' grants the paid role. past_due demotes to free."""
        return self.status == SubscriptionStatus.ACTIVE.value
