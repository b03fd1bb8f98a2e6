"""
Unit tests for StripeBillingClient.

The stripe SDK is patched; no network calls are made.
"""

from unittest.mock import MagicMock, patch

import pytest
import stripe

from src.integrations.stripe.billing_client import BillingAPIError, StripeBillingClient


@pytest.fixture
def billing_client():
    return StripeBillingClient(api_key="sk_test_123")


class TestStripeBillingClient:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

        with pytest.raises(ValueError):
            StripeBillingClient()

    def test_reads_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")

        assert StripeBillingClient().api_key == "sk_test_env"

    @pytest.mark.asyncio
    async def test_get_customer(self, billing_client):
        customer = MagicMock()
        customer.to_dict_recursive.return_value = {
            "id": "cus_1",
            "metadata": {"discord_user_id": "42"},
        }

        with patch.object(stripe.Customer, "retrieve", return_value=customer) as mock_retrieve:
            result = await billing_client.get_customer("cus_1")

        mock_retrieve.assert_called_once_with("cus_1", api_key="sk_test_123")
        assert result["metadata"]["discord_user_id"] == "42"

    @pytest.mark.asyncio
    async def test_get_subscription(self, billing_client):
        with patch.object(stripe.Subscription, "retrieve", return_value={"id": "sub_1", "status": "past_due"}):
            result = await billing_client.get_subscription("sub_1")

        assert result == {"id": "sub_1", "status": "past_due"}

    @pytest.mark.asyncio
    async def test_connection_error_becomes_billing_error(self, billing_client):
        error = stripe.error.APIConnectionError("network down")

        with patch.object(stripe.Customer, "retrieve", side_effect=error):
            with pytest.raises(BillingAPIError) as exc_info:
                await billing_client.get_customer("cus_1")

        assert "cus_1" in exc_info.value.message
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_missing_object_keeps_status_code(self, billing_client):
        error = stripe.error.InvalidRequestError(
            "No such subscription", param="id", http_status=404, code="resource_missing"
        )

        with patch.object(stripe.Subscription, "retrieve", side_effect=error):
            with pytest.raises(BillingAPIError) as exc_info:
                await billing_client.get_subscription("sub_gone")

        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "resource_missing"
