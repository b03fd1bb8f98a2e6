"""
WebhookEvent model for tracking processed Stripe events.

Stripe delivers at least once. This table lets the lifecycle adapter skip
an exact redelivery of an event it already applied. Distinct events for the
same subscription are never skipped; those converge through idempotent upsert.
"""

from sqlalchemy import Column, String, DateTime, Index, func

from src.models.base import Base, generate_uuid, utcnow


class WebhookEvent(Base):
    """Processed billing provider events, keyed by provider event id."""

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Stripe event id (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Event type (e.g., customer.subscription.updated)"
    )

    subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe subscription id the event referred to, if any"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the event was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index("idx_webhook_events_processed", "processed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, event_id={self.provider_event_id}, "
            f"type={self.event_type})>"
        )
