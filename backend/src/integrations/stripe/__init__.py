"""
Stripe integration module.
"""

from src.integrations.stripe.billing_client import (
    BillingAPIError,
    BillingClient,
    StripeBillingClient,
)

__all__ = ["BillingAPIError", "BillingClient", "StripeBillingClient"]
