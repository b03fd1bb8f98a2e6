"""
FunnelRecord model for referral attribution.

One row per attribution attempt: an invite-link click that may later be
correlated with a guild join and, eventually, a leave.

Status only moves forward: clicked -> joined -> left. Left is terminal.
"""

import enum

from sqlalchemy import Column, String, DateTime, Enum, Index, text

from src.models.base import Base, TimestampMixin, ServerScopedMixin, generate_uuid

# Sentinel invite code for joins with no correlated click
ORGANIC_INVITE_CODE = "ORGANIC"


class FunnelStatus(str, enum.Enum):
    """Funnel record status values."""
    CLICKED = "clicked"    # Referral link clicked, no join correlated yet
    JOINED = "joined"      # Correlated with a guild join
    LEFT = "left"          # Member left the guild after joining


class FunnelRecord(Base, TimestampMixin, ServerScopedMixin):
    """
    Tracks one referral click through join and leave.

    INVARIANTS:
    - joined_at is set iff status is joined or left
    - left_at is set iff status is left
    - at most one open (joined, left_at IS NULL) record per (server_id, user_id)
    """

    __tablename__ = "funnel_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    invite_code = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Referral invite code, or ORGANIC for uncorrelated joins"
    )
    affiliate_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="Referrer credited with the click (null for organic)"
    )
    user_id = Column(
        String(32),
        nullable=True,
        index=True,
        comment="Discord user id, set once a join is correlated"
    )

    status = Column(
        Enum(
            FunnelStatus,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            name="funnel_status",
        ),
        default=FunnelStatus.CLICKED,
        nullable=False,
        index=True,
    )

    clicked_at = Column(DateTime(timezone=True), nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=True)
    left_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_funnel_records_pending", "server_id", "status", "clicked_at"),
        Index("ix_funnel_records_member", "server_id", "user_id", "status"),
        # One open join per member; left records are excluded
        Index(
            "uq_funnel_records_open_join",
            "server_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'joined'"),
            sqlite_where=text("status = 'joined'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<FunnelRecord(id={self.id}, server_id={self.server_id}, "
            f"invite_code={self.invite_code}, status={self.status})>"
        )

    @property
    def is_organic(self) -> bool:
        return self.invite_code == ORGANIC_INVITE_CODE

    @property
    def is_open_join(self) -> bool:
        """Joined and not yet left."""
        return self.status == FunnelStatus.JOINED and self.left_at is None
