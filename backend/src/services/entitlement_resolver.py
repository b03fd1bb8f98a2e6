"""
Entitlement resolution from the subscription projection.

A member is entitled to the paid role on a server iff they hold an active
subscription there. past_due and every other status are not entitled.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.models.subscription import Subscription
from src.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class EntitlementResolver:
    """Answers is_entitled(server, member)."""

    def __init__(self, db_session: Session):
        self.subscriptions = SubscriptionRepository(db_session)

    def governing_subscription(self, server_id: str, user_id: str) -> Optional[Subscription]:
        """
        The active subscription that decides entitlement.

        With more than one active subscription the most recently created
        governs and the anomaly is logged.
        """
        active = self.subscriptions.list_active_for_member(server_id, user_id)
        if not active:
            return None

        if len(active) > 1:
            logger.warning("Duplicate active subscriptions for member", extra={
                "server_id": server_id,
                "user_id": user_id,
                "subscription_ids": [s.id for s in active],
                "governing_subscription_id": active[0].id
            })

        return active[0]

    def is_entitled(self, server_id: str, user_id: str) -> bool:
        return self.governing_subscription(server_id, user_id) is not None
