"""
Unit tests for server aggregate computation.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from src.models.funnel_record import FunnelRecord, FunnelStatus, ORGANIC_INVITE_CODE
from src.models.server_aggregate import ServerAggregate
from src.repositories.subscription_repository import SubscriptionRepository
from src.services.server_aggregates import ServerAggregateService, conversion_rate
from src.tests.helpers.fakes import StepClock

SERVER_ID = "900000000000000002"


def _add_record(db_session, clock, invite_code="ABC", affiliate_id="aff-1",
                user_id=None, status=FunnelStatus.CLICKED, left=False):
    now = clock()
    record = FunnelRecord(
        server_id=SERVER_ID,
        invite_code=invite_code,
        affiliate_id=affiliate_id,
        user_id=user_id,
        status=status,
        clicked_at=now,
        joined_at=now if status != FunnelStatus.CLICKED else None,
        left_at=now if left else None,
    )
    db_session.add(record)
    db_session.commit()
    return record


def _add_active_subscription(db_session, sub_id, user_id, server_id=SERVER_ID, status="active"):
    SubscriptionRepository(db_session).upsert(sub_id, {
        "customer_id": f"cus_{user_id}",
        "user_id": user_id,
        "server_id": server_id,
        "status": status,
    })


class TestConversionRate:

    def test_zero_denominator_is_zero(self):
        assert conversion_rate(5, 0) == 0.0

    def test_full_conversion(self):
        assert conversion_rate(1, 1) == 100.0

    def test_rounds_to_two_decimals(self):
        assert conversion_rate(1, 3) == 33.33
        assert conversion_rate(2, 3) == 66.67

    def test_rounds_half_up(self):
        assert conversion_rate(1, 800) == 0.13


class TestCompute:

    def test_empty_server(self, db_session):
        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        assert snapshot.total_clicks == 0
        assert snapshot.total_active_joins == 0
        assert snapshot.conversion_rate == 0.0
        assert snapshot.active_paid_members == 0
        assert snapshot.paid_conversion_rate == 0.0

    def test_organic_joins_count_as_joins_not_clicks(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        _add_record(db_session, clock, invite_code=ORGANIC_INVITE_CODE, affiliate_id=None,
                    user_id="2", status=FunnelStatus.JOINED)

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        assert snapshot.total_clicks == 1
        assert snapshot.total_active_joins == 2
        assert snapshot.conversion_rate == 200.0

    def test_left_records_are_not_active(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock)
        _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        _add_record(db_session, clock, user_id="2", status=FunnelStatus.LEFT, left=True)

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        assert snapshot.total_clicks == 3
        assert snapshot.total_active_joins == 1
        assert snapshot.conversion_rate == 33.33

    def test_paid_conversion(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        _add_record(db_session, clock, user_id="2", status=FunnelStatus.JOINED)
        _add_active_subscription(db_session, "sub_1", "1")
        _add_active_subscription(db_session, "sub_2", "2", status="past_due")

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        assert snapshot.active_paid_members == 1
        assert snapshot.paid_conversion_rate == 50.0

    def test_duplicate_active_subscriptions_count_once(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        _add_active_subscription(db_session, "sub_1", "1")
        _add_active_subscription(db_session, "sub_1b", "1")

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        assert snapshot.active_paid_members == 1

    def test_affiliate_slice(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, affiliate_id="aff-1", user_id="1", status=FunnelStatus.JOINED)
        _add_record(db_session, clock, affiliate_id="aff-1")
        _add_record(db_session, clock, affiliate_id="aff-2", user_id="2", status=FunnelStatus.JOINED)
        _add_active_subscription(db_session, "sub_1", "1")
        _add_active_subscription(db_session, "sub_2", "2")

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID, affiliate_id="aff-1")

        assert snapshot.affiliate_id == "aff-1"
        assert snapshot.total_clicks == 2
        assert snapshot.total_active_joins == 1
        assert snapshot.conversion_rate == 50.0
        assert snapshot.active_paid_members == 1
        assert snapshot.paid_conversion_rate == 100.0

    def test_affiliate_with_no_joins(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, affiliate_id="aff-3")
        _add_active_subscription(db_session, "sub_9", "9")

        snapshot = ServerAggregateService(db_session).compute(SERVER_ID, affiliate_id="aff-3")

        assert snapshot.total_clicks == 1
        assert snapshot.active_paid_members == 0
        assert snapshot.paid_conversion_rate == 0.0


class TestRecomputeAndGet:

    @pytest.mark.asyncio
    async def test_recompute_persists_full_row(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        service = ServerAggregateService(db_session)

        await service.recompute(SERVER_ID)

        row = db_session.get(ServerAggregate, SERVER_ID)
        assert row.total_clicks == 1
        assert row.total_active_joins == 1
        assert row.conversion_rate == 100.0
        assert row.computed_at is not None

    @pytest.mark.asyncio
    async def test_recompute_overwrites_previous_values(self, db_session):
        clock = StepClock()
        record = _add_record(db_session, clock, user_id="1", status=FunnelStatus.JOINED)
        service = ServerAggregateService(db_session)
        await service.recompute(SERVER_ID)

        record.status = FunnelStatus.LEFT
        record.left_at = datetime.now(timezone.utc)
        db_session.commit()
        await service.recompute(SERVER_ID)

        row = db_session.get(ServerAggregate, SERVER_ID)
        assert row.total_active_joins == 0
        assert row.conversion_rate == 0.0

    @pytest.mark.asyncio
    async def test_get_computes_on_first_read(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock)
        service = ServerAggregateService(db_session)

        snapshot = await service.get(SERVER_ID)

        assert snapshot.total_clicks == 1
        assert db_session.get(ServerAggregate, SERVER_ID) is not None

    @pytest.mark.asyncio
    async def test_get_returns_persisted_row(self, db_session):
        clock = StepClock()
        service = ServerAggregateService(db_session)
        await service.recompute(SERVER_ID)
        _add_record(db_session, clock)

        snapshot = await service.get(SERVER_ID)

        assert snapshot.total_clicks == 0

    @pytest.mark.asyncio
    async def test_affiliate_slice_is_not_persisted(self, db_session):
        clock = StepClock()
        _add_record(db_session, clock, affiliate_id="aff-1")
        service = ServerAggregateService(db_session)

        snapshot = await service.get(SERVER_ID, affiliate_id="aff-1")

        assert snapshot.total_clicks == 1
        assert db_session.get(ServerAggregate, SERVER_ID) is None

    @pytest.mark.asyncio
    async def test_concurrent_recomputes_share_a_lock(self, db_session):
        service = ServerAggregateService(db_session)
        _add_record(db_session, StepClock())

        results = await asyncio.gather(service.recompute(SERVER_ID), service.recompute(SERVER_ID))

        assert all(r.total_clicks == 1 for r in results)
        assert SERVER_ID in service._locks
        assert not service._locks[SERVER_ID].locked()

    def test_snapshot_to_dict(self, db_session):
        snapshot = ServerAggregateService(db_session).compute(SERVER_ID)

        data = snapshot.to_dict()

        assert data["server_id"] == SERVER_ID
        assert isinstance(data["computed_at"], str)
