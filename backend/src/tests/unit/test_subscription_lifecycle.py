"""
Unit tests for SubscriptionLifecycleAdapter.

Tests cover:
- created / updated / deleted subscription events
- Identity resolution (customer metadata, subscription fallback, stored id)
- Missing server id and unknown status
- Exact redelivery skipping
- Invoice events
- Role sync outcomes (reconciled, skipped, failed)
"""

from unittest.mock import AsyncMock

import pytest

from src.integrations.discord.exceptions import PlatformRequestError
from src.integrations.stripe.billing_client import BillingAPIError
from src.models.server_aggregate import ServerAggregate
from src.models.subscription import Subscription
from src.models.webhook_event import WebhookEvent
from src.services.entitlement_resolver import EntitlementResolver
from src.services.role_reconciler import RoleReconciler
from src.services.server_aggregates import ServerAggregateService
from src.services.subscription_lifecycle import SubscriptionLifecycleAdapter

SERVER_ID = "111"
PAID = "🟢 Paid Member"
FREE = "🔴 Free Member"

_event_counter = 0


def _subscription(sub_id="sub_1", status="active", customer="cus_1", user_id=None,
                  server_id=SERVER_ID, **extra):
    metadata = {}
    if server_id:
        metadata["discord_server_id"] = server_id
    if user_id:
        metadata["discord_user_id"] = user_id
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
        "created": 1767225600,
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
    }
    obj.update(extra)
    return obj


def _event(event_type, obj, event_id=None):
    global _event_counter
    _event_counter += 1
    return {
        "id": event_id or f"evt_{_event_counter}",
        "type": event_type,
        "data": {"object": obj},
    }


@pytest.fixture
def adapter(db_session, monetization_config, fake_platform, fake_billing):
    fake_billing.customers["cus_1"] = {"id": "cus_1", "metadata": {"discord_user_id": "42"}}
    return SubscriptionLifecycleAdapter(
        db_session,
        ServerAggregateService(db_session),
        RoleReconciler(EntitlementResolver(db_session), monetization_config),
        platform=fake_platform,
        billing_client=fake_billing,
    )


@pytest.fixture
def member(fake_guild):
    return fake_guild.add_member("42")


class TestSubscriptionEvents:

    @pytest.mark.asyncio
    async def test_created_grants_paid_role(self, adapter, db_session, fake_guild, member):
        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.processed is True
        assert result.user_id == "42"
        assert result.server_id == SERVER_ID
        assert result.entitlement_changed is True
        assert result.role_sync == "reconciled"
        assert fake_guild.role_names_of("42") == {PAID}

        sub = db_session.get(Subscription, "sub_1")
        assert sub.status == "active"
        assert sub.user_id == "42"
        assert sub.price_id == "price_monthly"

    @pytest.mark.asyncio
    async def test_created_is_active_regardless_of_payload_status(self, adapter, db_session, member):
        await adapter.handle_event(
            _event("customer.subscription.created", _subscription(status="incomplete"))
        )

        assert db_session.get(Subscription, "sub_1").status == "active"

    @pytest.mark.asyncio
    async def test_updated_past_due_demotes(self, adapter, db_session, fake_guild, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        result = await adapter.handle_event(
            _event("customer.subscription.updated", _subscription(status="past_due"))
        )

        assert result.entitlement_changed is True
        assert db_session.get(Subscription, "sub_1").status == "past_due"
        assert fake_guild.role_names_of("42") == {FREE}

    @pytest.mark.asyncio
    async def test_updated_canceled_is_stored_as_cancelled(self, adapter, db_session, member):
        await adapter.handle_event(
            _event("customer.subscription.updated", _subscription(status="canceled"))
        )

        assert db_session.get(Subscription, "sub_1").status == "cancelled"

    @pytest.mark.asyncio
    async def test_deleted_cancels(self, adapter, db_session, fake_guild, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        result = await adapter.handle_event(
            _event("customer.subscription.deleted", _subscription(status="active"))
        )

        sub = db_session.get(Subscription, "sub_1")
        assert sub.status == "cancelled"
        assert sub.cancelled_at is not None
        assert result.entitlement_changed is True
        assert fake_guild.role_names_of("42") == {FREE}

    @pytest.mark.asyncio
    async def test_out_of_order_events_keep_one_row(self, adapter, db_session, member):
        await adapter.handle_event(
            _event("customer.subscription.updated", _subscription(status="past_due"))
        )
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        rows = db_session.query(Subscription).filter(Subscription.id == "sub_1").all()
        assert len(rows) == 1
        assert rows[0].status == "active"

    @pytest.mark.asyncio
    async def test_unchanged_entitlement_is_reported(self, adapter, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        result = await adapter.handle_event(
            _event("customer.subscription.updated", _subscription(status="active"))
        )

        assert result.entitlement_changed is False

    @pytest.mark.asyncio
    async def test_recomputes_aggregate(self, adapter, db_session, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert db_session.get(ServerAggregate, SERVER_ID) is not None

    @pytest.mark.asyncio
    async def test_missing_server_id_is_skipped(self, adapter, db_session):
        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(server_id=None))
        )

        assert result.processed is True
        assert result.skipped_reason == "missing_server_id"
        assert db_session.get(Subscription, "sub_1") is None

    @pytest.mark.asyncio
    async def test_unknown_status_is_skipped(self, adapter, db_session):
        result = await adapter.handle_event(
            _event("customer.subscription.updated", _subscription(status="mystery"))
        )

        assert result.skipped_reason == "unknown_status"
        assert db_session.get(Subscription, "sub_1") is None


class TestIdentityResolution:

    @pytest.mark.asyncio
    async def test_falls_back_to_subscription_metadata(self, adapter, fake_billing, member):
        fake_billing.customers["cus_1"] = {"id": "cus_1", "metadata": {}}

        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(user_id="42"))
        )

        assert result.user_id == "42"

    @pytest.mark.asyncio
    async def test_falls_back_when_customer_lookup_fails(self, adapter, fake_billing, member):
        fake_billing.fail_customers = True

        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(user_id="42"))
        )

        assert result.user_id == "42"
        assert result.role_sync == "reconciled"

    @pytest.mark.asyncio
    async def test_customer_metadata_wins(self, adapter, member):
        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(user_id="999"))
        )

        assert result.user_id == "42"

    @pytest.mark.asyncio
    async def test_unresolvable_identity_still_records(self, adapter, db_session, fake_billing, fake_guild):
        fake_billing.customers = {}

        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(customer="cus_unknown"))
        )

        assert result.processed is True
        assert result.skipped_reason == "unresolvable_identity"
        assert result.role_sync == "skipped"
        sub = db_session.get(Subscription, "sub_1")
        assert sub.status == "active"
        assert sub.user_id is None
        assert [c for c in fake_guild.calls if c[0] != "create"] == []

    @pytest.mark.asyncio
    async def test_uses_stored_user_when_unresolved(self, adapter, fake_billing, fake_guild, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))
        fake_billing.customers = {}

        result = await adapter.handle_event(
            _event("customer.subscription.deleted", _subscription())
        )

        assert result.user_id == "42"
        assert fake_guild.role_names_of("42") == {FREE}


class TestRedelivery:

    @pytest.mark.asyncio
    async def test_exact_redelivery_is_skipped(self, adapter, db_session, member):
        event = _event("customer.subscription.created", _subscription(), event_id="evt_dup")
        await adapter.handle_event(event)

        result = await adapter.handle_event(event)

        assert result.processed is False
        assert result.skipped_reason == "duplicate"
        assert db_session.query(WebhookEvent).filter(
            WebhookEvent.provider_event_id == "evt_dup"
        ).count() == 1

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(self, adapter):
        result = await adapter.handle_event(_event("customer.created", {"id": "cus_1"}))

        assert result.processed is True
        assert result.skipped_reason == "unhandled_event_type"


class TestInvoiceEvents:

    @pytest.mark.asyncio
    async def test_payment_failed_refreshes_subscription(
        self, adapter, db_session, fake_billing, fake_guild, member
    ):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))
        fake_billing.subscriptions["sub_1"] = _subscription(status="past_due")

        result = await adapter.handle_event(
            _event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})
        )

        assert result.processed is True
        assert db_session.get(Subscription, "sub_1").status == "past_due"
        assert fake_guild.role_names_of("42") == {FREE}

    @pytest.mark.asyncio
    async def test_payment_failed_without_subscription(self, adapter):
        result = await adapter.handle_event(_event("invoice.payment_failed", {"id": "in_1"}))

        assert result.skipped_reason == "no_subscription"

    @pytest.mark.asyncio
    async def test_payment_failed_lookup_error_propagates(self, adapter, db_session):
        event = _event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_gone"})

        with pytest.raises(BillingAPIError):
            await adapter.handle_event(event)

        assert db_session.query(WebhookEvent).filter(
            WebhookEvent.provider_event_id == event["id"]
        ).count() == 0

    @pytest.mark.asyncio
    async def test_payment_succeeded_recomputes(self, adapter, db_session, member):
        await adapter.handle_event(_event("customer.subscription.created", _subscription()))
        db_session.query(ServerAggregate).delete()
        db_session.commit()

        result = await adapter.handle_event(
            _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_1"})
        )

        assert result.server_id == SERVER_ID
        assert db_session.get(ServerAggregate, SERVER_ID) is not None


class TestRoleSync:

    @pytest.mark.asyncio
    async def test_member_not_in_guild_reports_failure(self, adapter, db_session):
        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.processed is True
        assert result.role_sync == "failed"
        assert "not found" in result.error
        assert db_session.get(Subscription, "sub_1").status == "active"

    @pytest.mark.asyncio
    async def test_missing_permission_reports_failure(self, adapter, db_session, fake_guild, member):
        fake_guild.can_manage = False

        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.role_sync == "failed"
        assert db_session.get(Subscription, "sub_1").status == "active"

    @pytest.mark.asyncio
    async def test_platform_not_ready_reports_failure(self, adapter, fake_platform, member):
        fake_platform.ready = False

        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.role_sync == "failed"

    @pytest.mark.asyncio
    async def test_rejected_update_still_recomputes(self, adapter, db_session, fake_guild, member):
        fake_guild.fail_for.add("42")

        result = await adapter.handle_event(
            _event("customer.subscription.created", _subscription(), event_id="evt_reject")
        )

        assert result.processed is True
        assert result.role_sync == "failed"
        assert "rejected" in result.error
        assert db_session.get(Subscription, "sub_1").status == "active"
        assert db_session.get(ServerAggregate, SERVER_ID).active_paid_members == 1
        assert db_session.query(WebhookEvent).filter(
            WebhookEvent.provider_event_id == "evt_reject"
        ).count() == 1

    @pytest.mark.asyncio
    async def test_discord_request_failure_reports_failure(self, adapter, db_session, member):
        adapter.reconciler.reconcile_user = AsyncMock(
            side_effect=PlatformRequestError("Discord role add failed with status 503", status=503)
        )

        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.role_sync == "failed"
        assert "503" in result.error
        assert db_session.get(ServerAggregate, SERVER_ID) is not None

    @pytest.mark.asyncio
    async def test_without_platform_sync_is_skipped(
        self, db_session, monetization_config, fake_billing
    ):
        fake_billing.customers["cus_1"] = {"id": "cus_1", "metadata": {"discord_user_id": "42"}}
        adapter = SubscriptionLifecycleAdapter(
            db_session,
            ServerAggregateService(db_session),
            RoleReconciler(EntitlementResolver(db_session), monetization_config),
            platform=None,
            billing_client=fake_billing,
        )

        result = await adapter.handle_event(_event("customer.subscription.created", _subscription()))

        assert result.processed is True
        assert result.role_sync == "skipped"
