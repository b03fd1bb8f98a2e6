"""
Stripe billing client.

Read-only lookups the lifecycle adapter needs: customer by id (for the
discord_user_id metadata) and subscription by id (for invoice events).

The stripe SDK is blocking, so every call runs in a worker thread.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import stripe

logger = logging.getLogger(__name__)


class BillingAPIError(Exception):
    """Raised when the billing provider cannot answer a lookup."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class BillingClient(ABC):
    """Lookups against the billing provider."""

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        pass


def _to_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeBillingClient(BillingClient):
    """BillingClient over the stripe SDK."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY is required")

    async def _retrieve(self, resource: Any, object_id: str, kind: str) -> Dict[str, Any]:
        try:
            obj = await asyncio.to_thread(resource.retrieve, object_id, api_key=self.api_key)
        except stripe.error.StripeError as e:
            logger.error("Stripe lookup failed", extra={
                "kind": kind,
                "object_id": object_id,
                "status_code": getattr(e, "http_status", None),
                "error": str(e)
            })
            raise BillingAPIError(
                f"Failed to retrieve {kind} {object_id}: {e}",
                status_code=getattr(e, "http_status", None),
                code=getattr(e, "code", None),
            ) from e
        return _to_dict(obj)

    async def get_customer(self, customer_id: str) -> Dict[str, Any]:
        """
        Retrieve a customer.

        Raises:
            BillingAPIError: If Stripe rejects the request or is unreachable
        """
        return await self._retrieve(stripe.Customer, customer_id, "customer")

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Retrieve a subscription.

        Raises:
            BillingAPIError: If Stripe rejects the request or is unreachable
        """
        return await self._retrieve(stripe.Subscription, subscription_id, "subscription")
