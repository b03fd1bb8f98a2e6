"""
Subscription repository for data access operations.

Encapsulates all database operations for the subscription projection:
- Upsert keyed by Stripe subscription id
- Active-subscription lookups for entitlement
- Paid-member counts for aggregates
- Webhook event deduplication
"""

import logging
from typing import Optional, List, Iterable, Tuple
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from src.models.base import utcnow
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.webhook_event import WebhookEvent
from src.repositories.base_repo import BaseRepository, StoreError

logger = logging.getLogger(__name__)

# Columns the lifecycle adapter is allowed to write
_UPSERT_FIELDS = (
    "customer_id",
    "user_id",
    "server_id",
    "status",
    "price_id",
    "current_period_start",
    "current_period_end",
    "cancelled_at",
)


class SubscriptionRepository(BaseRepository[Subscription]):
    """Repository for subscription data access."""

    def _get_model_class(self) -> type[Subscription]:
        return Subscription

    def upsert(
        self,
        subscription_id: str,
        values: dict,
        created_at: Optional[datetime] = None
    ) -> Tuple[Subscription, Optional[str]]:
        """
        Insert or update a subscription by Stripe id.

        Last write wins on every provided field. If a concurrent writer
        inserted the same id first, the insert is retried as an update.

        Args:
            subscription_id: Stripe subscription id
            values: Column values (unknown keys are ignored)
            created_at: Provider creation time, used only on insert

        Returns:
            (subscription, previous_status) where previous_status is None
            if the row was inserted

        Raises:
            StoreError: If the store is unavailable
        """
        fields = {k: v for k, v in values.items() if k in _UPSERT_FIELDS}

        existing = self.get_by_id(subscription_id)
        if existing is None:
            subscription = Subscription(id=subscription_id, **fields)
            if created_at is not None:
                subscription.created_at = created_at
            inserted = False
            with self._store_operation("insert", subscription_id=subscription_id):
                try:
                    self.db.add(subscription)
                    self.db.commit()
                    self.db.refresh(subscription)
                    inserted = True
                except IntegrityError:
                    self.db.rollback()
                    logger.info("Concurrent subscription insert, retrying as update", extra={
                        "subscription_id": subscription_id
                    })

            if inserted:
                logger.info("Subscription created", extra={
                    "subscription_id": subscription_id,
                    "server_id": subscription.server_id,
                    "status": subscription.status
                })
                return subscription, None

            existing = self.get_by_id(subscription_id)
            if existing is None:
                raise StoreError("upsert", f"subscription {subscription_id} vanished after conflict")

        previous_status = existing.status
        for key, value in fields.items():
            setattr(existing, key, value)

        with self._store_operation("upsert", subscription_id=subscription_id):
            self.db.commit()
            self.db.refresh(existing)

        if previous_status != existing.status:
            logger.info("Subscription status updated", extra={
                "subscription_id": subscription_id,
                "server_id": existing.server_id,
                "old_status": previous_status,
                "new_status": existing.status
            })

        return existing, previous_status

    def list_active_for_member(self, server_id: str, user_id: str) -> List[Subscription]:
        """
        Active subscriptions for (server, user), most recently created first.

        More than one row here is a reconciliation anomaly.
        """
        with self._store_operation("list_active_for_member", server_id=server_id, user_id=user_id):
            return self.db.query(Subscription).filter(
                Subscription.server_id == server_id,
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value
            ).order_by(
                Subscription.created_at.desc(),
                Subscription.id.desc()
            ).all()

    def count_active_paid_users(
        self,
        server_id: str,
        user_ids: Optional[Iterable[str]] = None
    ) -> int:
        """
        Distinct users holding an active subscription on a server.

        Args:
            server_id: Guild id
            user_ids: Optional restriction (per-affiliate slices)
        """
        if user_ids is not None:
            user_ids = list(user_ids)
            if not user_ids:
                return 0

        with self._store_operation("count_active_paid_users", server_id=server_id):
            query = self.db.query(func.count(func.distinct(Subscription.user_id))).filter(
                Subscription.server_id == server_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.user_id.isnot(None)
            )
            if user_ids is not None:
                query = query.filter(Subscription.user_id.in_(user_ids))
            return query.scalar() or 0


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """
    Repository for webhook event deduplication.

    Tracks processed Stripe events so exact redeliveries are skipped.
    """

    def _get_model_class(self) -> type[WebhookEvent]:
        return WebhookEvent

    def is_processed(self, event_id: str) -> bool:
        """
        Check if a webhook event has already been processed.

        Args:
            event_id: Stripe event id

        Returns:
            True if already processed, False otherwise
        """
        with self._store_operation("is_processed", event_id=event_id):
            existing = self.db.query(WebhookEvent).filter(
                WebhookEvent.provider_event_id == event_id
            ).first()

        return existing is not None

    def mark_processed(
        self,
        event_id: str,
        event_type: str,
        subscription_id: Optional[str] = None,
        payload_hash: Optional[str] = None
    ) -> None:
        """
        Mark a webhook event as processed.

        A unique-constraint clash means a concurrent delivery of the same
        event already recorded it, which is fine.
        """
        event = WebhookEvent(
            provider_event_id=event_id,
            event_type=event_type,
            subscription_id=subscription_id,
            payload_hash=payload_hash,
            processed_at=utcnow()
        )
        with self._store_operation("mark_processed", event_id=event_id):
            try:
                self.db.add(event)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info("Webhook event already recorded", extra={"event_id": event_id})
