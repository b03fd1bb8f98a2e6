"""
ServerAggregate model: derived per-guild funnel statistics.

Never patched field by field. Every write replaces the whole row with a
fresh recompute from funnel_records and subscriptions.
"""

from sqlalchemy import Column, String, Integer, Float, DateTime

from src.models.base import Base, TimestampMixin


class ServerAggregate(Base, TimestampMixin):
    """Last successfully computed statistics for one guild."""

    __tablename__ = "server_aggregates"

    server_id = Column(
        String(32),
        primary_key=True,
        comment="Discord guild (server) id"
    )

    total_clicks = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Non-organic funnel records"
    )
    total_active_joins = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Joined records with no leave (organic included)"
    )
    conversion_rate = Column(
        Float,
        nullable=False,
        default=0.0,
        comment="total_active_joins / total_clicks * 100, 2 decimals"
    )
    active_paid_members = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Distinct users with an active subscription"
    )
    paid_conversion_rate = Column(
        Float,
        nullable=False,
        default=0.0,
        comment="active_paid_members / total_active_joins * 100, 2 decimals"
    )

    computed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When this snapshot was computed"
    )

    def __repr__(self) -> str:
        return (
            f"<ServerAggregate(server_id={self.server_id}, clicks={self.total_clicks}, "
            f"active_joins={self.total_active_joins}, rate={self.conversion_rate})>"
        )
