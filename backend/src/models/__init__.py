"""
Database models for referral attribution, subscriptions and aggregates.

Server-scoped models inherit from ServerScopedMixin.
"""

from src.models.base import TimestampMixin, ServerScopedMixin
from src.models.funnel_record import FunnelRecord, FunnelStatus, ORGANIC_INVITE_CODE
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.server_aggregate import ServerAggregate
from src.models.webhook_event import WebhookEvent

__all__ = [
    "TimestampMixin",
    "ServerScopedMixin",
    "FunnelRecord",
    "FunnelStatus",
    "ORGANIC_INVITE_CODE",
    "Subscription",
    "SubscriptionStatus",
    "ServerAggregate",
    "WebhookEvent",
]
