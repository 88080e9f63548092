"""Checkout session initiator tests"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import stripe

from app.core.errors import ConfigurationError, LedgerError, UpstreamError
from app.core.security import Identity
from app.models.order import OrderStatus, PaymentMethod
from app.services.checkout_service import (
    create_card_checkout, create_mobile_money_checkout, resolve_customer
)
from app.services.order_service import get_order
from app.services.pricing_service import price_cart


@pytest.fixture
def cart():
    return price_cart(
        [{"name": "Latte", "price": 4.00, "quantity": 2, "image": "/images/latte.png"}],
        subtotal=8.00,
        discount_code="UBUNTU88",
        discount_amount=2.00,
        shipping=3.00,
        tax=0.50,
        tip_amount=1.00,
        location="Kampala",
    )


@pytest.mark.critical
class TestCardCheckout:
    """Test Stripe checkout session creation"""

    async def test_creates_session_and_pending_row(self, db_session, mock_stripe_client, cart):
        result = await create_card_checkout(
            db_session, mock_stripe_client, cart, identity=Identity(user_id="user-42", email="buyer@example.com"),
        )

        assert result.session_id == "cs_test_123"
        assert result.url == "https://checkout.stripe.com/c/pay/cs_test_123"
        assert result.to_response()["sessionId"] == "cs_test_123"

        order = await get_order(db_session, "cs_test_123")
        assert order.status == OrderStatus.PENDING
        assert order.payment_method == PaymentMethod.STRIPE
        assert order.total == Decimal("10.50")
        assert order.currency == "usd"
        assert order.user_id == "user-42"
        assert order.email == "buyer@example.com"
        assert order.discount_code == "UBUNTU88"
        assert order.discount_amount == Decimal("2.00")
        assert order.items == [{
            "name": "Latte", "quantity": 2, "unit_price": 3.0,
            "image": "https://shop.example.com/images/latte.png",
        }]

    async def test_stripe_params(self, db_session, mock_stripe_client, cart):
        await create_card_checkout(db_session, mock_stripe_client, cart, client_email="Guest@Example.com")

        params = mock_stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert params["mode"] == "payment"
        assert params["payment_method_types"] == ["card"]
        assert params["success_url"] == "https://shop.example.com/checkout/success?session_id={CHECKOUT_SESSION_ID}"
        assert params["cancel_url"] == "https://shop.example.com/checkout/canceled"
        assert params["customer_email"] == "guest@example.com"

        lines = params["line_items"]
        assert [line["price_data"]["product_data"]["name"] for line in lines] == [
            "Latte", "Tip (Support our Farmers)", "Shipping", "Tax",
        ]
        assert lines[0]["price_data"]["unit_amount"] == 300
        assert lines[0]["quantity"] == 2
        assert lines[0]["price_data"]["product_data"]["images"] == ["https://shop.example.com/images/latte.png"]
        assert all(isinstance(value, str) for value in params["metadata"].values())
        assert params["metadata"]["discount_code"] == "UBUNTU88"

    async def test_anonymous_checkout_has_no_customer_email(self, db_session, mock_stripe_client, cart):
        await create_card_checkout(db_session, mock_stripe_client, cart)
        params = mock_stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert "customer_email" not in params

    async def test_provider_failure_writes_nothing(self, db_session, mock_stripe_client, cart):
        mock_stripe_client.v1.checkout.sessions.create_async.side_effect = stripe.APIConnectionError("network down")

        with pytest.raises(UpstreamError):
            await create_card_checkout(db_session, mock_stripe_client, cart)
        assert await get_order(db_session, "cs_test_123") is None

    async def test_missing_client_is_configuration_error(self, db_session, cart):
        with pytest.raises(ConfigurationError):
            await create_card_checkout(db_session, None, cart)

    async def test_ledger_failure_still_returns_url(self, db_session, mock_stripe_client, cart):
        with patch("app.services.checkout_service.merge_order", AsyncMock(side_effect=LedgerError("db down"))):
            result = await create_card_checkout(db_session, mock_stripe_client, cart)

        assert result.url == "https://checkout.stripe.com/c/pay/cs_test_123"
        assert mock_stripe_client.v1.checkout.sessions.create_async.await_count == 1


@pytest.mark.critical
class TestMobileMoneyCheckout:
    """Test the Pesapal rail"""

    async def test_submits_order_and_records_pending(self, db_session, pesapal_client, fake_pesapal, cart):
        result = await create_mobile_money_checkout(
            db_session, pesapal_client, cart, identity=Identity(user_id="user-42", email="buyer@example.com"),
        )

        assert result.session_id == "trk_test_123"
        assert result.url.startswith("https://pay.pesapal.test/")

        body = fake_pesapal.last_json("SubmitOrderRequest")
        assert body["amount"] == 10.5
        assert body["currency"] == "UGX"
        assert body["notification_id"] == "ipn-test-id"
        assert body["callback_url"] == "https://shop.example.com/checkout/success"
        assert body["billing_address"]["email_address"] == "buyer@example.com"
        assert len(body["id"]) == 32

        order = await get_order(db_session, "trk_test_123")
        assert order.status == OrderStatus.PENDING
        assert order.payment_method == PaymentMethod.PESAPAL
        assert order.currency == "ugx"

    async def test_unconfigured_client_is_configuration_error(self, db_session, cart):
        with pytest.raises(ConfigurationError):
            await create_mobile_money_checkout(db_session, None, cart)


@pytest.mark.high
class TestResolveCustomer:
    """Test identity precedence"""

    def test_verified_identity_wins(self):
        identity = Identity(user_id="user-42", email="verified@example.com")
        assert resolve_customer(identity, "client@example.com") == ("user-42", "verified@example.com")

    def test_client_email_used_when_anonymous(self):
        assert resolve_customer(Identity(), " Client@Example.com ") == (None, "client@example.com")

    def test_nothing_known(self):
        assert resolve_customer(None, None) == (None, None)
