"""
Funnel tracking routes.

Called by the invite landing page (clicks) and by bot processes that do
not share this API's event loop (joins and leaves).
"""

import logging

from fastapi import APIRouter, Depends, status

from src.api.dependencies.internal_auth import require_internal_api_key
from src.api.dependencies.monetization import get_monetization_service
from src.api.schemas.monetization import (
    ClickRequest,
    MemberEventRequest,
    FunnelRecordResponse,
    MemberJoinedResponse,
    MemberLeftResponse,
)
from src.services.monetization_service import MonetizationService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/tracking",
    tags=["tracking"],
    dependencies=[Depends(require_internal_api_key)],
)


@router.post("/click", response_model=FunnelRecordResponse, status_code=status.HTTP_201_CREATED)
async def track_click(
    body: ClickRequest,
    service: MonetizationService = Depends(get_monetization_service),
):
    record = await service.on_invite_clicked(body.server_id, body.invite_code, body.affiliate_id)
    return FunnelRecordResponse.from_record(record)


@router.post("/member-joined", response_model=MemberJoinedResponse)
async def track_member_joined(
    body: MemberEventRequest,
    service: MonetizationService = Depends(get_monetization_service),
):
    outcome = await service.on_member_joined(body.server_id, body.user_id)
    return MemberJoinedResponse(
        record=FunnelRecordResponse.from_record(outcome.record),
        organic=outcome.record.is_organic,
        assigned_role=outcome.role.assigned_role if outcome.role else None,
        role_error=outcome.role_error,
    )


@router.post("/member-left", response_model=MemberLeftResponse)
async def track_member_left(
    body: MemberEventRequest,
    service: MonetizationService = Depends(get_monetization_service),
):
    closed = await service.on_member_left(body.server_id, body.user_id)
    return MemberLeftResponse(closed=[FunnelRecordResponse.from_record(r) for r in closed])
