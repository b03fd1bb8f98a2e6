"""
Server aggregate and role reconciliation routes.

Internal: require X-Internal-Api-Key when INTERNAL_API_KEY is configured.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies.internal_auth import require_internal_api_key
from src.api.dependencies.monetization import get_monetization_service
from src.api.schemas.monetization import AggregateResponse, ReconcileResponse
from src.services.monetization_service import MonetizationService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/servers",
    tags=["servers"],
    dependencies=[Depends(require_internal_api_key)],
)


@router.get("/{server_id}/aggregate", response_model=AggregateResponse)
async def get_server_aggregate(
    server_id: str,
    affiliate_id: Optional[str] = Query(None, description="Restrict to one affiliate's referrals"),
    service: MonetizationService = Depends(get_monetization_service),
):
    snapshot = await service.get_server_aggregate(server_id, affiliate_id)
    return AggregateResponse(
        server_id=snapshot.server_id,
        affiliate_id=snapshot.affiliate_id,
        total_clicks=snapshot.total_clicks,
        total_active_joins=snapshot.total_active_joins,
        conversion_rate=snapshot.conversion_rate,
        active_paid_members=snapshot.active_paid_members,
        paid_conversion_rate=snapshot.paid_conversion_rate,
        computed_at=snapshot.computed_at,
    )


@router.post("/{server_id}/roles/reconcile", response_model=ReconcileResponse)
async def reconcile_server_roles(
    server_id: str,
    service: MonetizationService = Depends(get_monetization_service),
):
    """
    Sweep every member of the guild.

    403 if the bot lacks Manage Roles, 404 if the bot is not in the guild,
    503 if Discord is unavailable.
    """
    summary = await service.reconcile_all_roles(server_id)
    logger.info("Role sweep requested via API", extra=summary.to_dict())
    return ReconcileResponse(**summary.to_dict())
