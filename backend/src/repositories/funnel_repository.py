"""
Funnel repository: the Funnel Store.

Pure storage for attribution records. Inserts, conditional updates by id
and filtered scans; no attribution logic lives here.
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import and_, case, func
from sqlalchemy.exc import IntegrityError

from src.models.funnel_record import FunnelRecord, FunnelStatus, ORGANIC_INVITE_CODE
from src.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class OpenJoinConflictError(Exception):
    """Raised when a write would give a member a second open join."""

    def __init__(self, user_id: str, server_id: Optional[str] = None):
        self.user_id = user_id
        self.server_id = server_id
        super().__init__(f"Member {user_id} already has an open join")


class FunnelRepository(BaseRepository[FunnelRecord]):
    """Data access for funnel_records."""

    def _get_model_class(self) -> type[FunnelRecord]:
        return FunnelRecord

    def list_pending_clicks(self, server_id: str, limit: int) -> List[FunnelRecord]:
        """
        Most recent unresolved clicks for a server.

        Args:
            server_id: Guild id
            limit: Window size (most recent first)

        Returns:
            Clicked records with no join, newest click first
        """
        with self._store_operation("list_pending_clicks", server_id=server_id):
            return self.db.query(FunnelRecord).filter(
                FunnelRecord.server_id == server_id,
                FunnelRecord.status == FunnelStatus.CLICKED,
                FunnelRecord.joined_at.is_(None)
            ).order_by(
                FunnelRecord.clicked_at.desc()
            ).limit(limit).all()

    def list_open_joins(self, server_id: str, user_id: str) -> List[FunnelRecord]:
        """Joined records for (server, user) that have not been closed by a leave."""
        with self._store_operation("list_open_joins", server_id=server_id, user_id=user_id):
            return self.db.query(FunnelRecord).filter(
                FunnelRecord.server_id == server_id,
                FunnelRecord.user_id == user_id,
                FunnelRecord.status == FunnelStatus.JOINED,
                FunnelRecord.left_at.is_(None)
            ).order_by(
                FunnelRecord.joined_at.desc()
            ).all()

    def claim_click(self, record_id: str, user_id: str, joined_at: datetime) -> bool:
        """
        Transition a Clicked record to Joined.

        Conditional on the record still being Clicked, so two concurrent
        joins can never claim the same click.

        Returns:
            True if this call performed the transition

        Raises:
            OpenJoinConflictError: If the member already holds an open join
            StoreError: If the store is unavailable
        """
        with self._store_operation("claim_click", record_id=record_id):
            try:
                updated = self.db.query(FunnelRecord).filter(
                    FunnelRecord.id == record_id,
                    FunnelRecord.status == FunnelStatus.CLICKED
                ).update(
                    {
                        FunnelRecord.status: FunnelStatus.JOINED,
                        FunnelRecord.user_id: user_id,
                        FunnelRecord.joined_at: joined_at,
                    },
                    synchronize_session=False
                )
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise OpenJoinConflictError(user_id) from e
        return updated == 1

    def add_join(self, record: FunnelRecord) -> FunnelRecord:
        """
        Insert a record that is already Joined.

        Raises:
            OpenJoinConflictError: If the member already holds an open join
            StoreError: If the store is unavailable
        """
        with self._store_operation("add_join", server_id=record.server_id, user_id=record.user_id):
            try:
                self.db.add(record)
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise OpenJoinConflictError(record.user_id, record.server_id) from e
            self.db.refresh(record)
        return record

    def close_join(self, record_id: str, left_at: datetime) -> bool:
        """
        Transition an open Joined record to Left.

        Returns:
            True if this call performed the transition (False if already left)
        """
        with self._store_operation("close_join", record_id=record_id):
            updated = self.db.query(FunnelRecord).filter(
                FunnelRecord.id == record_id,
                FunnelRecord.status == FunnelStatus.JOINED,
                FunnelRecord.left_at.is_(None)
            ).update(
                {
                    FunnelRecord.status: FunnelStatus.LEFT,
                    FunnelRecord.left_at: left_at,
                },
                synchronize_session=False
            )
            self.db.commit()
        return updated == 1

    def refresh(self, record: FunnelRecord) -> FunnelRecord:
        """Reload a record after a bulk conditional update."""
        with self._store_operation("refresh", record_id=record.id):
            self.db.refresh(record)
        return record

    def funnel_counts(self, server_id: str, affiliate_id: Optional[str] = None) -> Tuple[int, int]:
        """
        Click and open-join counts in a single statement.

        Both counts come from the same read, so they always agree with
        each other even while joins and leaves are being written.

        Returns:
            (non-organic clicks, open joins including organic)
        """
        clicks = func.coalesce(func.sum(
            case((FunnelRecord.invite_code != ORGANIC_INVITE_CODE, 1), else_=0)
        ), 0)
        active_joins = func.coalesce(func.sum(
            case(
                (and_(
                    FunnelRecord.status == FunnelStatus.JOINED,
                    FunnelRecord.left_at.is_(None)
                ), 1),
                else_=0
            )
        ), 0)

        with self._store_operation("funnel_counts", server_id=server_id):
            query = self.db.query(clicks, active_joins).filter(
                FunnelRecord.server_id == server_id
            )
            if affiliate_id is not None:
                query = query.filter(FunnelRecord.affiliate_id == affiliate_id)
            total_clicks, total_active_joins = query.one()

        return int(total_clicks or 0), int(total_active_joins or 0)

    def list_active_join_user_ids(self, server_id: str, affiliate_id: str) -> List[str]:
        """Distinct users whose open join is credited to an affiliate."""
        with self._store_operation("list_active_join_user_ids", server_id=server_id):
            rows = self.db.query(FunnelRecord.user_id).filter(
                FunnelRecord.server_id == server_id,
                FunnelRecord.affiliate_id == affiliate_id,
                FunnelRecord.status == FunnelStatus.JOINED,
                FunnelRecord.left_at.is_(None),
                FunnelRecord.user_id.isnot(None)
            ).distinct().all()
        return [row[0] for row in rows]
