"""
Server aggregate computation.

Aggregates are always recomputed in full from the funnel and subscription
tables; nothing is incremented in place. Per-affiliate slices use the same
computation filtered by affiliate and are never persisted.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from src.models.base import utcnow
from src.models.server_aggregate import ServerAggregate
from src.repositories.aggregate_repository import AggregateRepository
from src.repositories.funnel_repository import FunnelRepository
from src.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def conversion_rate(numerator: int, denominator: int) -> float:
    """Percentage rounded half-up to 2 decimals; 0 when the denominator is 0."""
    if not denominator:
        return 0.0
    rate = Decimal(numerator) * Decimal(100) / Decimal(denominator)
    return float(rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass
class AggregateSnapshot:
    """Derived statistics for a server, or one affiliate's slice of it."""
    server_id: str
    total_clicks: int
    total_active_joins: int
    conversion_rate: float
    active_paid_members: int
    paid_conversion_rate: float
    computed_at: datetime
    affiliate_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: ServerAggregate) -> "AggregateSnapshot":
        return cls(
            server_id=row.server_id,
            total_clicks=row.total_clicks,
            total_active_joins=row.total_active_joins,
            conversion_rate=row.conversion_rate,
            active_paid_members=row.active_paid_members,
            paid_conversion_rate=row.paid_conversion_rate,
            computed_at=row.computed_at,
        )

    def to_row(self) -> ServerAggregate:
        return ServerAggregate(
            server_id=self.server_id,
            total_clicks=self.total_clicks,
            total_active_joins=self.total_active_joins,
            conversion_rate=self.conversion_rate,
            active_paid_members=self.active_paid_members,
            paid_conversion_rate=self.paid_conversion_rate,
            computed_at=self.computed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat() if self.computed_at else None
        return data


class ServerAggregateService:
    """
    Recomputes and serves server aggregates.

    Recomputes for one server are serialized in-process so a read of the
    funnel and subscription counts is never interleaved with another
    recompute's write of the same row.
    """

    def __init__(
        self,
        db_session: Session,
        locks: Optional[Dict[str, asyncio.Lock]] = None,
    ):
        self.db = db_session
        self._locks = locks if locks is not None else defaultdict(asyncio.Lock)
        self._funnel = FunnelRepository(db_session)
        self._subscriptions = SubscriptionRepository(db_session)
        self._aggregates = AggregateRepository(db_session)

    def compute(self, server_id: str, affiliate_id: Optional[str] = None) -> AggregateSnapshot:
        """
        Compute a snapshot without persisting it.

        Args:
            server_id: Guild id
            affiliate_id: Restrict to one affiliate's funnel records

        Raises:
            StoreError: If the store is unavailable
        """
        total_clicks, total_active_joins = self._funnel.funnel_counts(server_id, affiliate_id)

        if affiliate_id is None:
            active_paid = self._subscriptions.count_active_paid_users(server_id)
        else:
            user_ids = self._funnel.list_active_join_user_ids(server_id, affiliate_id)
            active_paid = self._subscriptions.count_active_paid_users(server_id, user_ids)

        return AggregateSnapshot(
            server_id=server_id,
            affiliate_id=affiliate_id,
            total_clicks=total_clicks,
            total_active_joins=total_active_joins,
            conversion_rate=conversion_rate(total_active_joins, total_clicks),
            active_paid_members=active_paid,
            paid_conversion_rate=conversion_rate(active_paid, total_active_joins),
            computed_at=utcnow(),
        )

    async def recompute(self, server_id: str) -> AggregateSnapshot:
        """
        Recompute the server-wide aggregate and write it as one row.

        Raises:
            StoreError: If the store is unavailable
        """
        async with self._locks[server_id]:
            snapshot = self.compute(server_id)
            self._aggregates.replace(snapshot.to_row())
        return snapshot

    async def get(self, server_id: str, affiliate_id: Optional[str] = None) -> AggregateSnapshot:
        """
        Read the aggregate for a server or an affiliate slice of it.

        Server-wide reads return the persisted row, computing it on first
        read. Affiliate slices are always computed on read.
        """
        if affiliate_id is not None:
            return self.compute(server_id, affiliate_id)

        row = self._aggregates.get(server_id)
        if row is None:
            return await self.recompute(server_id)
        return AggregateSnapshot.from_row(row)
