"""
Stripe webhook handler for subscription lifecycle events.

SECURITY: Every webhook MUST pass Stripe signature verification before any
part of it reaches the lifecycle adapter.

Documentation: https://stripe.com/docs/webhooks/signatures
"""

import json
import logging
import os

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.api.dependencies.monetization import get_monetization_service
from src.api.schemas.monetization import StripeWebhookResponse
from src.services.monetization_service import MonetizationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/stripe", tags=["webhooks"])


async def get_verified_event(request: Request) -> dict:
    """
    Verify the Stripe-Signature header and return the event as a plain dict.

    Raises:
        HTTPException: 400 on a missing or bad signature or body,
            503 if the webhook secret is not configured
    """
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.warning("Missing Stripe-Signature header in webhook")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header"
        )

    body = await request.body()
    try:
        stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=secret)
    except stripe.error.SignatureVerificationError as e:
        logger.warning("Stripe signature verification failed", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )
    except ValueError:
        logger.error("Invalid JSON in webhook body")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body"
        )

    return json.loads(body)


@router.post("", response_model=StripeWebhookResponse)
async def handle_stripe_webhook(
    event: dict = Depends(get_verified_event),
    service: MonetizationService = Depends(get_monetization_service),
):
    logger.info("Received Stripe webhook", extra={
        "event_id": event.get("id"),
        "event_type": event.get("type")
    })

    result = await service.on_subscription_lifecycle_event(event)

    return StripeWebhookResponse(
        processed=result.processed,
        message=result.message,
        skipped_reason=result.skipped_reason,
        entitlement_changed=result.entitlement_changed,
        role_sync=result.role_sync,
    )
