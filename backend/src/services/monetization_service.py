"""
Monetization service.

The surface the HTTP routes, bot events and jobs call. One service is built
per database session from a MonetizationRuntime, which holds the
process-wide collaborators (platform connection, billing client, config and
per-server aggregate locks).

Usage:
    runtime = MonetizationRuntime(platform=platform, billing_client=billing)
    service = runtime.service(db_session)
    await service.on_member_joined(server_id, user_id)
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config.monetization import MonetizationConfig, get_monetization_config
from src.integrations.discord.exceptions import PlatformUnavailableError
from src.integrations.discord.platform_connection import PlatformConnection
from src.integrations.stripe.billing_client import BillingClient
from src.models.funnel_record import FunnelRecord
from src.services.attribution_matcher import AttributionMatcher
from src.services.attribution_strategies import MostRecentPendingClick
from src.services.entitlement_resolver import EntitlementResolver
from src.services.role_reconciler import (
    MemberReconcileResult,
    ReconcileSummary,
    RoleReconciler,
)
from src.services.server_aggregates import AggregateSnapshot, ServerAggregateService
from src.services.subscription_lifecycle import (
    LifecycleProcessingResult,
    SubscriptionLifecycleAdapter,
)

logger = logging.getLogger(__name__)


@dataclass
class MemberJoinOutcome:
    record: FunnelRecord
    role: Optional[MemberReconcileResult] = None
    role_error: Optional[str] = None


class MonetizationService:
    """Composes matcher, aggregates, reconciler and lifecycle adapter."""

    def __init__(
        self,
        db_session: Session,
        platform: Optional[PlatformConnection] = None,
        billing_client: Optional[BillingClient] = None,
        config: Optional[MonetizationConfig] = None,
        aggregate_locks: Optional[Dict[str, asyncio.Lock]] = None,
    ):
        self.db = db_session
        self.platform = platform
        self.config = config or get_monetization_config()

        self.aggregates = ServerAggregateService(db_session, locks=aggregate_locks)
        self.matcher = AttributionMatcher(
            db_session,
            self.aggregates,
            strategy=MostRecentPendingClick(self.config.pending_click_window),
        )
        self.resolver = EntitlementResolver(db_session)
        self.reconciler = RoleReconciler(self.resolver, self.config)
        self.lifecycle = SubscriptionLifecycleAdapter(
            db_session,
            self.aggregates,
            self.reconciler,
            platform=platform,
            billing_client=billing_client,
        )

    async def on_invite_clicked(
        self,
        server_id: str,
        invite_code: str,
        affiliate_id: Optional[str] = None,
    ) -> FunnelRecord:
        return await self.matcher.record_click(server_id, invite_code, affiliate_id)

    async def on_member_joined(self, server_id: str, user_id: str) -> MemberJoinOutcome:
        """
        Record the join, then give the new member their role.

        The role step only runs when the platform is already READY and its
        failure does not undo the recorded join.
        """
        record = await self.matcher.record_join(server_id, user_id)
        outcome = MemberJoinOutcome(record=record)

        if self.platform is None or not self.platform.is_ready:
            return outcome

        try:
            guild = await self.platform.get_guild(server_id)
            outcome.role = await self.reconciler.reconcile_user(guild, user_id, server_id)
        except Exception as e:
            logger.warning("Role assignment on join failed", extra={
                "server_id": server_id,
                "user_id": user_id,
                "error": str(e)
            })
            outcome.role_error = str(e)

        return outcome

    async def on_member_left(self, server_id: str, user_id: str) -> List[FunnelRecord]:
        return await self.matcher.record_leave(server_id, user_id)

    async def on_subscription_lifecycle_event(self, event: Dict[str, Any]) -> LifecycleProcessingResult:
        return await self.lifecycle.handle_event(event)

    async def reconcile_all_roles(
        self,
        server_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconcileSummary:
        """
        Full sweep of one guild.

        Raises:
            PlatformUnavailableError: If no platform is configured or ready
            GuildNotFoundError: If the bot is not in the guild
            RolePermissionError: If the bot cannot manage roles
        """
        if self.platform is None:
            raise PlatformUnavailableError("No platform connection configured")
        guild = await self.platform.get_guild(server_id)
        return await self.reconciler.reconcile_all(guild, server_id, cancel_event=cancel_event)

    async def get_server_aggregate(
        self,
        server_id: str,
        affiliate_id: Optional[str] = None,
    ) -> AggregateSnapshot:
        return await self.aggregates.get(server_id, affiliate_id)


@dataclass
class MonetizationRuntime:
    """Process-wide collaborators shared by every MonetizationService."""

    platform: Optional[PlatformConnection] = None
    billing_client: Optional[BillingClient] = None
    config: Optional[MonetizationConfig] = None
    aggregate_locks: Dict[str, asyncio.Lock] = field(
        default_factory=lambda: defaultdict(asyncio.Lock)
    )

    def service(self, db_session: Session) -> MonetizationService:
        return MonetizationService(
            db_session,
            platform=self.platform,
            billing_client=self.billing_client,
            config=self.config,
            aggregate_locks=self.aggregate_locks,
        )
