"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from src.api.schemas.monetization import (
    ClickRequest,
    MemberEventRequest,
    FunnelRecordResponse,
    MemberJoinedResponse,
    MemberLeftResponse,
    AggregateResponse,
    ReconcileResponse,
    StripeWebhookResponse,
)

__all__ = [
    "ClickRequest",
    "MemberEventRequest",
    "FunnelRecordResponse",
    "MemberJoinedResponse",
    "MemberLeftResponse",
    "AggregateResponse",
    "ReconcileResponse",
    "StripeWebhookResponse",
]
