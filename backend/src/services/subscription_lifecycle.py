"""
Subscription lifecycle adapter.

Turns Stripe lifecycle events into Subscription rows, then triggers a
targeted role reconcile and an aggregate recompute for the server.

Processes events with:
- Exact-redelivery skipping using the Stripe event id
- Idempotent upsert keyed by Stripe subscription id (reordering tolerated)
- Identity resolution from customer metadata, then subscription metadata
- Non-fatal role sync: failures are reported, the upsert stands
"""

import hashlib
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from src.integrations.discord.exceptions import PlatformError
from src.integrations.stripe.billing_client import BillingClient, BillingAPIError
from src.models.base import utcnow
from src.models.subscription import SubscriptionStatus
from src.repositories.subscription_repository import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from src.services.entitlement_resolver import EntitlementResolver
from src.services.role_reconciler import (
    RoleReconciler,
    RolePermissionError,
    MemberNotFoundError,
)
from src.services.server_aggregates import ServerAggregateService

logger = logging.getLogger(__name__)

USER_ID_METADATA_KEY = "discord_user_id"
SERVER_ID_METADATA_KEY = "discord_server_id"

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

SUBSCRIPTION_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED)


@dataclass
class LifecycleProcessingResult:
    """Result of lifecycle event processing."""
    processed: bool
    message: str
    subscription_id: Optional[str] = None
    server_id: Optional[str] = None
    user_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    entitlement_changed: bool = False
    role_sync: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _payload_hash(event: Dict[str, Any]) -> str:
    payload_str = json.dumps(event, sort_keys=True, default=str)
    return hashlib.sha256(payload_str.encode()).hexdigest()


class SubscriptionLifecycleAdapter:
    """
    Owns the subscription projection.

    The only writer of the subscriptions table.
    """

    def __init__(
        self,
        db_session: Session,
        aggregates: ServerAggregateService,
        reconciler: RoleReconciler,
        platform=None,
        billing_client: Optional[BillingClient] = None,
    ):
        """
        Initialize lifecycle adapter.

        Args:
            db_session: Database session
            aggregates: Aggregate service for recomputes
            reconciler: Role reconciler for targeted member syncs
            platform: PlatformConnection, or None to skip role sync
            billing_client: Billing lookups (customer metadata, invoice events)
        """
        self.db = db_session
        self.subscriptions = SubscriptionRepository(db_session)
        self.events = WebhookEventRepository(db_session)
        self.resolver = EntitlementResolver(db_session)
        self.aggregates = aggregates
        self.reconciler = reconciler
        self.platform = platform
        self.billing_client = billing_client

    async def handle_event(self, event: Dict[str, Any]) -> LifecycleProcessingResult:
        """
        Process one provider event.

        Args:
            event: Stripe event as a plain dict (id, type, data.object)

        Raises:
            StoreError: If the store is unavailable (sender should redeliver)
            BillingAPIError: If an invoice event's subscription cannot be read
        """
        event_id = event.get("id")
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_id and self.events.is_processed(event_id):
            logger.info("Duplicate lifecycle event skipped", extra={
                "event_id": event_id,
                "event_type": event_type
            })
            return LifecycleProcessingResult(
                processed=False,
                message="Event already processed",
                skipped_reason="duplicate"
            )

        if event_type in SUBSCRIPTION_EVENTS:
            result = await self._apply_subscription(event_type, obj)
        elif event_type == INVOICE_PAYMENT_FAILED:
            result = await self._handle_payment_failed(obj)
        elif event_type == INVOICE_PAYMENT_SUCCEEDED:
            result = await self._handle_payment_succeeded(obj)
        elif event_type == CHECKOUT_SESSION_COMPLETED:
            logger.info("Checkout session completed", extra={
                "event_id": event_id,
                "session_id": obj.get("id"),
                "subscription_id": obj.get("subscription")
            })
            result = LifecycleProcessingResult(
                processed=True,
                message="Checkout session logged",
                subscription_id=obj.get("subscription")
            )
        else:
            logger.info("Unhandled lifecycle event type", extra={
                "event_id": event_id,
                "event_type": event_type
            })
            result = LifecycleProcessingResult(
                processed=True,
                message=f"Event type {event_type} ignored",
                skipped_reason="unhandled_event_type"
            )

        if event_id and result.processed:
            self.events.mark_processed(
                event_id,
                event_type,
                subscription_id=result.subscription_id,
                payload_hash=_payload_hash(event)
            )

        return result

    def _target_status(self, event_type: str, subscription: Dict[str, Any]) -> SubscriptionStatus:
        if event_type == SUBSCRIPTION_CREATED:
            return SubscriptionStatus.ACTIVE
        if event_type == SUBSCRIPTION_DELETED:
            return SubscriptionStatus.CANCELLED
        return SubscriptionStatus.from_provider(subscription.get("status", ""))

    async def _resolve_user_id(self, subscription: Dict[str, Any]) -> Optional[str]:
        """Customer metadata first, then subscription metadata."""
        customer_id = subscription.get("customer")
        if customer_id and self.billing_client is not None:
            try:
                customer = await self.billing_client.get_customer(customer_id)
                user_id = (customer.get("metadata") or {}).get(USER_ID_METADATA_KEY)
                if user_id:
                    return str(user_id)
            except BillingAPIError as e:
                logger.warning("Customer lookup failed, using subscription metadata", extra={
                    "customer_id": customer_id,
                    "error": str(e)
                })

        user_id = (subscription.get("metadata") or {}).get(USER_ID_METADATA_KEY)
        return str(user_id) if user_id else None

    async def _apply_subscription(
        self,
        event_type: str,
        subscription: Dict[str, Any],
    ) -> LifecycleProcessingResult:
        subscription_id = subscription.get("id")
        metadata = subscription.get("metadata") or {}
        server_id = metadata.get(SERVER_ID_METADATA_KEY)

        if not server_id:
            logger.warning("Subscription event without server id", extra={
                "subscription_id": subscription_id,
                "event_type": event_type
            })
            return LifecycleProcessingResult(
                processed=True,
                message="No discord_server_id in subscription metadata",
                subscription_id=subscription_id,
                skipped_reason="missing_server_id"
            )
        server_id = str(server_id)

        try:
            status = self._target_status(event_type, subscription)
        except ValueError as e:
            logger.warning("Unknown subscription status", extra={
                "subscription_id": subscription_id,
                "status": subscription.get("status"),
            })
            return LifecycleProcessingResult(
                processed=True,
                message=str(e),
                subscription_id=subscription_id,
                server_id=server_id,
                skipped_reason="unknown_status"
            )

        user_id = await self._resolve_user_id(subscription)
        existing = self.subscriptions.get_by_id(subscription_id)
        if user_id is None and existing is not None:
            user_id = existing.user_id

        entitled_before = self.resolver.is_entitled(server_id, user_id) if user_id else False

        values = {
            "customer_id": subscription.get("customer"),
            "server_id": server_id,
            "status": status.value,
            "price_id": _first_price_id(subscription),
            "current_period_start": _from_timestamp(subscription.get("current_period_start")),
            "current_period_end": _from_timestamp(subscription.get("current_period_end")),
        }
        if user_id:
            values["user_id"] = user_id
        if status == SubscriptionStatus.CANCELLED:
            values["cancelled_at"] = _from_timestamp(subscription.get("canceled_at")) or utcnow()

        self.subscriptions.upsert(
            subscription_id,
            values,
            created_at=_from_timestamp(subscription.get("created"))
        )

        result = LifecycleProcessingResult(
            processed=True,
            message=f"Subscription {status.value}",
            subscription_id=subscription_id,
            server_id=server_id,
            user_id=user_id
        )

        if user_id:
            entitled_after = self.resolver.is_entitled(server_id, user_id)
            result.entitlement_changed = entitled_before != entitled_after
            await self._sync_role(result)
        else:
            logger.warning("Unresolvable identity, skipping role sync", extra={
                "subscription_id": subscription_id,
                "server_id": server_id,
                "customer_id": subscription.get("customer")
            })
            result.skipped_reason = "unresolvable_identity"
            result.role_sync = "skipped"

        await self.aggregates.recompute(server_id)

        logger.info("Lifecycle event applied", extra={
            "subscription_id": subscription_id,
            "server_id": server_id,
            "user_id": user_id,
            "event_type": event_type,
            "status": status.value,
            "entitlement_changed": result.entitlement_changed,
            "role_sync": result.role_sync
        })
        return result

    async def _sync_role(self, result: LifecycleProcessingResult) -> None:
        """Targeted reconcile; failures are recorded on the result."""
        if self.platform is None:
            result.role_sync = "skipped"
            return

        try:
            guild = await self.platform.get_guild(result.server_id)
            await self.reconciler.reconcile_user(guild, result.user_id, result.server_id)
            result.role_sync = "reconciled"
        except (
            PlatformError,
            MemberNotFoundError,
            RolePermissionError,
        ) as e:
            logger.warning("Role sync failed, left for next sweep", extra={
                "subscription_id": result.subscription_id,
                "server_id": result.server_id,
                "user_id": result.user_id,
                "error": str(e)
            })
            result.role_sync = "failed"
            result.error = str(e)
        except Exception as e:
            logger.error("Unexpected role sync failure, left for next sweep", extra={
                "subscription_id": result.subscription_id,
                "server_id": result.server_id,
                "user_id": result.user_id,
                "error": str(e)
            }, exc_info=True)
            result.role_sync = "failed"
            result.error = str(e)

    async def _handle_payment_failed(self, invoice: Dict[str, Any]) -> LifecycleProcessingResult:
        subscription_id = invoice.get("subscription")
        if not subscription_id or self.billing_client is None:
            logger.warning("Payment failure without readable subscription", extra={
                "invoice_id": invoice.get("id"),
                "subscription_id": subscription_id
            })
            return LifecycleProcessingResult(
                processed=True,
                message="No subscription to refresh",
                subscription_id=subscription_id,
                skipped_reason="no_subscription"
            )

        subscription = await self.billing_client.get_subscription(subscription_id)
        logger.info("Invoice payment failed, refreshing subscription", extra={
            "invoice_id": invoice.get("id"),
            "subscription_id": subscription_id,
            "status": subscription.get("status")
        })
        return await self._apply_subscription(SUBSCRIPTION_UPDATED, subscription)

    async def _handle_payment_succeeded(self, invoice: Dict[str, Any]) -> LifecycleProcessingResult:
        subscription_id = invoice.get("subscription")
        server_id = None

        existing = self.subscriptions.get_by_id(subscription_id) if subscription_id else None
        if existing is not None:
            server_id = existing.server_id
        elif subscription_id and self.billing_client is not None:
            subscription = await self.billing_client.get_subscription(subscription_id)
            server_id = (subscription.get("metadata") or {}).get(SERVER_ID_METADATA_KEY)

        if not server_id:
            return LifecycleProcessingResult(
                processed=True,
                message="Payment succeeded for unknown server",
                subscription_id=subscription_id,
                skipped_reason="missing_server_id"
            )

        server_id = str(server_id)
        await self.aggregates.recompute(server_id)
        logger.info("Invoice payment succeeded", extra={
            "invoice_id": invoice.get("id"),
            "subscription_id": subscription_id,
            "server_id": server_id
        })
        return LifecycleProcessingResult(
            processed=True,
            message="Aggregate recomputed",
            subscription_id=subscription_id,
            server_id=server_id
        )
