"""Stripe service - card checkout sessions, line items and webhook verification"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import stripe

from app.core.config import settings, CHECKOUT_SUCCESS_PATH, CHECKOUT_CANCEL_PATH
from app.core.errors import AuthenticityError, ConfigurationError, UpstreamError
from app.services.pricing_service import PricedCart

logger = logging.getLogger(__name__)

# Checkout session events that carry settlement facts
CHECKOUT_SESSION_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)


def build_stripe_client(api_key: Optional[str] = None) -> Optional[stripe.StripeClient]:
    """Create the process-wide Stripe client, or None when no secret key is configured"""
    api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
    if not api_key:
        logger.warning("STRIPE_SECRET_KEY not set - card checkout is disabled")
        return None
    return stripe.StripeClient(api_key, http_client=stripe.HTTPXClient())


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        value = getattr(obj, key, default)
    return default if value is None else value


def _require_client(client: Optional[stripe.StripeClient]) -> stripe.StripeClient:
    if client is None:
        logger.error("Stripe checkout requested but STRIPE_SECRET_KEY is not configured")
        raise ConfigurationError("Missing STRIPE_SECRET_KEY on server")
    return client


def build_line_items(cart: PricedCart, currency: str) -> List[Dict[str, Any]]:
    """Stripe ``line_items`` with inline price data, in provider order"""
    line_items = []
    for line in cart.provider_line_items():
        product_data: Dict[str, Any] = {"name": line.name}
        if line.image:
            product_data["images"] = [line.image]
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": product_data,
                "unit_amount": line.unit_amount_cents,
            },
            "quantity": line.quantity,
        })
    return line_items


async def create_checkout_session(
    client: Optional[stripe.StripeClient],
    cart: PricedCart,
    customer_email: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
    currency: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Create a Stripe Checkout session for a priced cart.

    Returns:
        (session_id, redirect_url)

    Raises:
        ConfigurationError: no Stripe client configured
        UpstreamError: Stripe rejected the request or was unreachable
    """
    client = _require_client(client)
    currency = (currency or settings.STRIPE_CURRENCY).lower()

    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": build_line_items(cart, currency),
        "success_url": f"{settings.FRONTEND_URL}{CHECKOUT_SUCCESS_PATH}",
        "cancel_url": f"{settings.FRONTEND_URL}{CHECKOUT_CANCEL_PATH}",
        "metadata": metadata or {},
    }
    if customer_email:
        params["customer_email"] = customer_email

    try:
        session = await client.v1.checkout.sessions.create_async(params=params)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout session creation failed: {e}")
        raise UpstreamError("Payment provider rejected the checkout request") from e

    session_id = _get_stripe_value(session, "id")
    url = _get_stripe_value(session, "url")
    if not session_id or not url:
        logger.error(f"Stripe returned a checkout session without id or url: {session_id}")
        raise UpstreamError("Payment provider returned an incomplete session")

    logger.info(f"Created Stripe checkout session {session_id} for {len(params['line_items'])} line item(s)")
    return session_id, url


async def list_session_line_items(client: Optional[stripe.StripeClient], session_id: str) -> List[Any]:
    """Line items Stripe recorded for a checkout session (product expanded)"""
    client = _require_client(client)
    try:
        result = await client.v1.checkout.sessions.line_items.list_async(
            session_id,
            params={"limit": 100, "expand": ["data.price.product"]},
        )
    except stripe.StripeError as e:
        raise UpstreamError(f"Failed to list line items for session {session_id}") from e
    return list(_get_stripe_value(result, "data", []) or [])


def verify_webhook(payload: bytes, sig_header: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Verify a Stripe webhook against the raw request body and return the event.

    Fails closed: a missing secret, a missing header, a bad signature or a
    non-JSON body all raise ``AuthenticityError``.
    """
    secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
        raise AuthenticityError("Webhook secret not configured")
    if not sig_header:
        raise AuthenticityError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, AttributeError) as e:
        # JSON that is not an object fails inside Event.construct_from
        logger.warning(f"Invalid Stripe webhook payload: {e}")
        raise AuthenticityError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise AuthenticityError("Invalid signature") from e

    return event.to_dict()
