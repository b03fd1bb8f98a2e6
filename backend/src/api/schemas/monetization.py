"""
Pydantic schemas for tracking, aggregate and reconcile routes.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.models.funnel_record import ORGANIC_INVITE_CODE


class ClickRequest(BaseModel):
    """A referral invite link was clicked."""
    server_id: str = Field(..., min_length=1, description="Discord guild id")
    invite_code: str = Field(..., min_length=1, max_length=100)
    affiliate_id: Optional[str] = Field(None, max_length=64, description="Referrer credited with the click")

    @field_validator("invite_code")
    @classmethod
    def not_organic_sentinel(cls, v: str) -> str:
        """ORGANIC marks uncorrelated joins and is never a real invite."""
        if v == ORGANIC_INVITE_CODE:
            raise ValueError(f"'{ORGANIC_INVITE_CODE}' is reserved and cannot be clicked")
        return v


class MemberEventRequest(BaseModel):
    """A member joined or left a guild."""
    server_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class FunnelRecordResponse(BaseModel):
    id: str
    server_id: str
    invite_code: str
    affiliate_id: Optional[str] = None
    user_id: Optional[str] = None
    status: str
    clicked_at: datetime
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "FunnelRecordResponse":
        return cls(
            id=record.id,
            server_id=record.server_id,
            invite_code=record.invite_code,
            affiliate_id=record.affiliate_id,
            user_id=record.user_id,
            status=record.status.value if hasattr(record.status, "value") else record.status,
            clicked_at=record.clicked_at,
            joined_at=record.joined_at,
            left_at=record.left_at,
        )


class MemberJoinedResponse(BaseModel):
    record: FunnelRecordResponse
    organic: bool
    assigned_role: Optional[str] = None
    role_error: Optional[str] = None


class MemberLeftResponse(BaseModel):
    closed: list[FunnelRecordResponse]


class AggregateResponse(BaseModel):
    """Server-wide aggregate, or one affiliate's slice."""
    server_id: str
    affiliate_id: Optional[str] = None
    total_clicks: int
    total_active_joins: int
    conversion_rate: float
    active_paid_members: int
    paid_conversion_rate: float
    computed_at: Optional[datetime] = None


class ReconcileResponse(BaseModel):
    server_id: str
    total_members: int
    updated_count: int
    error_count: int
    skipped_bots: int
    cancelled: bool
    duration_seconds: float


class StripeWebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool
    message: str
    skipped_reason: Optional[str] = None
    entitlement_changed: bool = False
    role_sync: Optional[str] = None
