"""Repository layer: single-table access with store-error translation."""

from src.repositories.base_repo import (
    BaseRepository,
    StoreError,
)
from src.db_base import Base
from src.repositories.funnel_repository import FunnelRepository, OpenJoinConflictError
from src.repositories.subscription_repository import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from src.repositories.aggregate_repository import AggregateRepository

__all__ = [
    "BaseRepository",
    "StoreError",
    "Base",
    "FunnelRepository",
    "OpenJoinConflictError",
    "SubscriptionRepository",
    "WebhookEventRepository",
    "AggregateRepository",
]
