"""Webhook service - apply provider settlement notifications to the order ledger

Every notification becomes a single ``merge_order`` with ``WEBHOOK_POLICY``.
Duplicates, out-of-order deliveries and a webhook arriving before the
checkout write all converge on the same row.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticityError, ConfigurationError, LedgerError, UpstreamError
from app.core.logging import webhook_logger
from app.core.metrics import webhook_events_counter
from app.models.order import PaymentMethod
from app.services import pesapal_service
from app.services.order_service import (
    EVENT_ASYNC_FAILED,
    EVENT_ASYNC_SUCCEEDED,
    EVENT_COMPLETED,
    EVENT_EXPIRED,
    WEBHOOK_POLICY,
    merge_order,
    settlement_patch,
)
from app.services.pricing_service import from_cents, round2
from app.services.stripe_service import _get_stripe_value, verify_webhook

logger = logging.getLogger(__name__)

STRIPE_EVENTS = {
    "checkout.session.completed": EVENT_COMPLETED,
    "checkout.session.async_payment_succeeded": EVENT_ASYNC_SUCCEEDED,
    "checkout.session.async_payment_failed": EVENT_ASYNC_FAILED,
    "checkout.session.expired": EVENT_EXPIRED,
}

SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")

FAILURE_REASONS = {
    EVENT_ASYNC_FAILED: "async_payment_failed",
    EVENT_EXPIRED: "expired",
}

MONEY_METADATA_KEYS = ("subtotal", "shipping", "tax", "discount_amount", "tip_amount")


def _metadata_amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = round2(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() and amount >= 0 else None


def _clean_email(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def extract_session_facts(session: Dict[str, Any]) -> Dict[str, Any]:
    """Settlement facts carried by a Stripe checkout session payload"""
    metadata = _get_stripe_value(session, "metadata", {}) or {}
    details = _get_stripe_value(session, "customer_details", {}) or {}

    currency = _get_stripe_value(session, "currency")
    amount_total = _get_stripe_value(session, "amount_total")

    facts: Dict[str, Any] = {
        "total": from_cents(amount_total) if amount_total is not None else None,
        "currency": currency.lower() if isinstance(currency, str) and currency else None,
        "email": (
            _clean_email(_get_stripe_value(details, "email"))
            or _clean_email(_get_stripe_value(session, "customer_email"))
            or _clean_email(metadata.get("email"))
        ),
        "customer_name": _get_stripe_value(details, "name"),
        "user_id": str(metadata["user_id"]) if metadata.get("user_id") else None,
        "location": metadata.get("location") or None,
        "discount_code": metadata.get("discount_code") or None,
    }
    for key in MONEY_METADATA_KEYS:
        facts[key] = _metadata_amount(metadata.get(key))
    return facts


async def apply_stripe_event(db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a verified Stripe event.

    Returns:
        Acknowledgement body for Stripe

    Raises:
        LedgerError: the ledger could not be written (Stripe must retry)
    """
    event_type = event.get("type") or ""
    event_id = event.get("id")
    settlement = STRIPE_EVENTS.get(event_type)
    if settlement is None:
        webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="ignored").inc()
        webhook_logger.debug(f"Ignoring Stripe event {event_id} of type {event_type}")
        return {"received": True, "ignored": event_type}

    data = event.get("data")
    session = (data.get("object") if isinstance(data, dict) else None) or {}
    session_id = _get_stripe_value(session, "id")
    if not session_id:
        webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="ignored").inc()
        webhook_logger.warning(f"Stripe event {event_id} ({event_type}) has no session id")
        return {"received": True, "ignored": event_type}

    if settlement == EVENT_COMPLETED:
        payment_status = _get_stripe_value(session, "payment_status")
        if payment_status not in SETTLED_PAYMENT_STATUSES:
            # Delayed payment methods report through the async_payment_* events
            webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="ignored").inc()
            webhook_logger.info(f"Session {session_id} completed with payment_status={payment_status}; waiting for settlement")
            return {"received": True, "ignored": event_type}

    facts = extract_session_facts(session)
    patch = settlement_patch(
        settlement,
        error=FAILURE_REASONS.get(settlement),
        payment_method=PaymentMethod.STRIPE,
        **facts,
    )

    try:
        await merge_order(db, session_id, patch, WEBHOOK_POLICY)
    except LedgerError:
        webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="failed").inc()
        webhook_logger.error(f"Failed to apply Stripe event {event_id} ({event_type}) to order {session_id}")
        raise

    webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="applied").inc()
    webhook_logger.info(f"Applied Stripe event {event_id} ({event_type}) to order {session_id} as {patch['status']}")
    return {"received": True}


async def process_stripe_webhook(db: AsyncSession, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Verify and apply a Stripe webhook.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe-Signature header value
        db: Database session

    Raises:
        AuthenticityError: unverifiable payload; the ledger is not touched
        LedgerError: the ledger could not be written
    """
    try:
        event = verify_webhook(payload, sig_header)
    except AuthenticityError:
        webhook_events_counter.labels(provider=PaymentMethod.STRIPE, outcome="rejected").inc()
        raise
    return await apply_stripe_event(db, event)


PESAPAL_SETTLEMENTS = {
    pesapal_service.STATUS_COMPLETED: (EVENT_COMPLETED, None),
    pesapal_service.STATUS_FAILED: (EVENT_ASYNC_FAILED, "failed"),
    pesapal_service.STATUS_REVERSED: (EVENT_ASYNC_FAILED, "reversed"),
}


def pesapal_ack(order_tracking_id: str, notification_type: Optional[str], merchant_reference: Optional[str]) -> Dict[str, Any]:
    """Acknowledgement body Pesapal expects from an IPN endpoint"""
    return {
        "orderNotificationType": notification_type or "IPNCHANGE",
        "orderTrackingId": order_tracking_id,
        "orderMerchantReference": merchant_reference or "",
        "status": 200,
    }


async def process_pesapal_notification(
    db: AsyncSession,
    client: pesapal_service.PesapalClient,
    order_tracking_id: str,
    notification_type: Optional[str] = None,
    merchant_reference: Optional[str] = None,
    ipn_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Reconcile a Pesapal IPN by pulling the transaction status.

    The notification itself is never trusted for the outcome.

    Raises:
        UpstreamError: status query failed (Pesapal must retry)
        LedgerError: the ledger could not be written
    """
    if client is None:
        raise ConfigurationError("Missing Pesapal credentials on server")
    try:
        status_response = await client.get_transaction_status(order_tracking_id)
    except UpstreamError:
        webhook_events_counter.labels(provider=PaymentMethod.PESAPAL, outcome="failed").inc()
        raise

    status = pesapal_service.payment_status(status_response)
    ack = pesapal_ack(order_tracking_id, notification_type,
                      merchant_reference or status_response.get("merchant_reference"))

    settlement = PESAPAL_SETTLEMENTS.get(status)
    if settlement is None:
        webhook_events_counter.labels(provider=PaymentMethod.PESAPAL, outcome="ignored").inc()
        webhook_logger.info(f"Pesapal order {order_tracking_id} status '{status}' - nothing to apply")
        return ack

    event, reason = settlement
    if status == pesapal_service.STATUS_REVERSED:
        webhook_logger.warning(f"Pesapal reported a reversal for order {order_tracking_id}")

    currency = status_response.get("currency")
    patch = settlement_patch(
        event,
        error=reason,
        payment_method=PaymentMethod.PESAPAL,
        total=_metadata_amount(status_response.get("amount")),
        currency=currency.lower() if isinstance(currency, str) and currency else None,
        ipn_id=ipn_id,
    )

    try:
        await merge_order(db, order_tracking_id, patch, WEBHOOK_POLICY)
    except LedgerError:
        webhook_events_counter.labels(provider=PaymentMethod.PESAPAL, outcome="failed").inc()
        webhook_logger.error(f"Failed to apply Pesapal status '{status}' to order {order_tracking_id}")
        raise

    webhook_events_counter.labels(provider=PaymentMethod.PESAPAL, outcome="applied").inc()
    webhook_logger.info(f"Applied Pesapal status '{status}' to order {order_tracking_id} as {patch['status']}")
    return ack
