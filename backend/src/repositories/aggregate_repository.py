"""
Server aggregate repository.

Aggregates are written whole: replace() overwrites every statistic column
of the row in a single commit, so readers never observe a torn snapshot.
"""

import logging
from typing import Optional

from src.models.server_aggregate import ServerAggregate
from src.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class AggregateRepository(BaseRepository[ServerAggregate]):
    """Data access for server_aggregates."""

    def _get_model_class(self) -> type[ServerAggregate]:
        return ServerAggregate

    def get(self, server_id: str) -> Optional[ServerAggregate]:
        return self.get_by_id(server_id)

    def replace(self, snapshot: ServerAggregate) -> ServerAggregate:
        """
        Write a full aggregate snapshot for a server.

        Args:
            snapshot: Transient ServerAggregate with every statistic set

        Returns:
            The persisted row
        """
        with self._store_operation("replace", server_id=snapshot.server_id):
            row = self.db.get(ServerAggregate, snapshot.server_id)
            if row is None:
                row = ServerAggregate(server_id=snapshot.server_id)
                self.db.add(row)

            row.total_clicks = snapshot.total_clicks
            row.total_active_joins = snapshot.total_active_joins
            row.conversion_rate = snapshot.conversion_rate
            row.active_paid_members = snapshot.active_paid_members
            row.paid_conversion_rate = snapshot.paid_conversion_rate
            row.computed_at = snapshot.computed_at

            self.db.commit()
            self.db.refresh(row)

        logger.info("Server aggregate updated", extra={
            "server_id": row.server_id,
            "total_clicks": row.total_clicks,
            "total_active_joins": row.total_active_joins,
            "conversion_rate": row.conversion_rate,
            "paid_conversion_rate": row.paid_conversion_rate
        })
        return row
