"""
Attribution matcher.

Turns anonymous click / join / leave signals into funnel records:
- click: a new Clicked record, no matching
- join: claim the best pending click, or record an ORGANIC join
- leave: close every open join for the member

Every transition is a single conditional update by id. Store failures are
raised as StoreError and never retried here; the sender redelivers.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from src.models.base import utcnow
from src.models.funnel_record import FunnelRecord, FunnelStatus, ORGANIC_INVITE_CODE
from src.repositories.base_repo import StoreError
from src.repositories.funnel_repository import FunnelRepository, OpenJoinConflictError
from src.services.attribution_strategies import AttributionStrategy, MostRecentPendingClick
from src.services.server_aggregates import ServerAggregateService

logger = logging.getLogger(__name__)


class AttributionMatcher:
    """Consumes funnel signals for all servers."""

    def __init__(
        self,
        db_session: Session,
        aggregates: ServerAggregateService,
        strategy: Optional[AttributionStrategy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.funnel = FunnelRepository(db_session)
        self.aggregates = aggregates
        self.strategy = strategy or MostRecentPendingClick()
        self._clock = clock

    async def record_click(
        self,
        server_id: str,
        invite_code: str,
        affiliate_id: Optional[str],
    ) -> FunnelRecord:
        """
        Record a referral link click.

        Raises:
            StoreError: If the store is unavailable
        """
        record = FunnelRecord(
            server_id=server_id,
            invite_code=invite_code,
            affiliate_id=affiliate_id,
            status=FunnelStatus.CLICKED,
            clicked_at=self._clock(),
        )
        self.funnel.add(record)

        logger.info("Invite click recorded", extra={
            "server_id": server_id,
            "invite_code": invite_code,
            "affiliate_id": affiliate_id,
            "record_id": record.id
        })

        await self.aggregates.recompute(server_id)
        return record

    async def record_join(self, server_id: str, user_id: str) -> FunnelRecord:
        """
        Correlate a member join with a pending click.

        Candidates come from the strategy in preference order; a candidate
        claimed by a concurrent join is skipped. With nothing claimable the
        join is recorded as ORGANIC. If another process records a join for
        the same member first, that open record is returned instead.

        Returns:
            The Joined record (or the already-open one for a repeated join)

        Raises:
            StoreError: If the store is unavailable
        """
        open_joins = self.funnel.list_open_joins(server_id, user_id)
        if open_joins:
            logger.warning("Member joined while already holding an open join", extra={
                "server_id": server_id,
                "user_id": user_id,
                "open_record_ids": [r.id for r in open_joins]
            })
            return open_joins[0]

        try:
            record = self._claim_or_organic(server_id, user_id, self._clock())
        except OpenJoinConflictError:
            open_joins = self.funnel.list_open_joins(server_id, user_id)
            if not open_joins:
                raise StoreError("record_join", f"open join for {user_id} vanished after conflict")
            logger.warning("Concurrent join recorded elsewhere, keeping it", extra={
                "server_id": server_id,
                "user_id": user_id,
                "record_id": open_joins[0].id
            })
            return open_joins[0]

        logger.info("Member join recorded", extra={
            "server_id": server_id,
            "user_id": user_id,
            "invite_code": record.invite_code,
            "affiliate_id": record.affiliate_id,
            "strategy": self.strategy.name,
            "organic": record.is_organic
        })

        await self.aggregates.recompute(server_id)
        return record

    def _claim_or_organic(self, server_id: str, user_id: str, joined_at: datetime) -> FunnelRecord:
        for candidate in self.strategy.candidates(self.funnel, server_id):
            if self.funnel.claim_click(candidate.id, user_id, joined_at):
                return self.funnel.refresh(candidate)
            logger.info("Pending click already claimed, trying next", extra={
                "server_id": server_id,
                "record_id": candidate.id
            })

        return self.funnel.add_join(FunnelRecord(
            server_id=server_id,
            invite_code=ORGANIC_INVITE_CODE,
            affiliate_id=None,
            user_id=user_id,
            status=FunnelStatus.JOINED,
            clicked_at=joined_at,
            joined_at=joined_at,
        ))

    async def record_leave(self, server_id: str, user_id: str) -> List[FunnelRecord]:
        """
        Close every open join for a member.

        Re-running is a no-op: records already Left keep their left_at.

        Returns:
            Records closed by this call

        Raises:
            StoreError: If the store is unavailable
        """
        left_at = self._clock()
        closed = []

        for record in self.funnel.list_open_joins(server_id, user_id):
            if self.funnel.close_join(record.id, left_at):
                closed.append(self.funnel.refresh(record))

        if closed:
            logger.info("Member leave recorded", extra={
                "server_id": server_id,
                "user_id": user_id,
                "closed_count": len(closed)
            })
        else:
            logger.info("Member leave with no open join", extra={
                "server_id": server_id,
                "user_id": user_id
            })

        await self.aggregates.recompute(server_id)
        return closed
