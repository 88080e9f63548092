"""Checkout service - turn a priced cart into a provider session and a pending order"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings, PESAPAL_CALLBACK_PATH
from app.core.errors import ConfigurationError, LedgerError, OrderServiceError
from app.core.logging import checkout_logger
from app.core.metrics import checkout_sessions_counter
from app.core.security import Identity
from app.models.order import OrderStatus, PaymentMethod
from app.services import stripe_service
from app.services.order_service import CHECKOUT_POLICY, merge_order
from app.services.pesapal_service import PesapalClient
from app.services.pricing_service import PricedCart


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    session_id: str
    payment_method: str

    def to_response(self) -> Dict[str, str]:
        return {"url": self.url, "session_id": self.session_id, "sessionId": self.session_id}


def resolve_customer(identity: Optional[Identity], client_email: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Verified identity wins over a client-supplied email"""
    user_id = identity.user_id if identity else None
    email = identity.email if identity and identity.email else None
    if not email and client_email:
        email = client_email.strip().lower() or None
    return user_id, email


def build_ledger_patch(cart: PricedCart, payment_method: str, currency: str,
                       user_id: Optional[str], email: Optional[str]) -> Dict[str, Any]:
    return {
        "status": OrderStatus.PENDING,
        "payment_method": payment_method,
        "total": cart.total,
        "currency": currency.lower(),
        "client_total": cart.client_total,
        "email": email,
        "user_id": user_id,
        "items": cart.ledger_items(),
        **cart.breakdown(),
    }


async def _record_pending(db: AsyncSession, session_id: str, patch: Dict[str, Any]):
    # The provider session already exists; a ledger failure must not hide its URL
    try:
        await merge_order(db, session_id, patch, CHECKOUT_POLICY)
    except LedgerError as e:
        checkout_logger.error(
            f"Checkout session {session_id} created but ledger write failed: {e.message}. "
            f"Row will be reconciled by the webhook"
        )


async def create_card_checkout(
    db: AsyncSession,
    stripe_client,
    cart: PricedCart,
    identity: Optional[Identity] = None,
    client_email: Optional[str] = None,
) -> CheckoutResult:
    """
    Create a Stripe Checkout session and record a pending order.

    Exactly one provider call and one ledger upsert. When the provider call
    fails nothing is written.
    """
    user_id, email = resolve_customer(identity, client_email)
    metadata = cart.metadata()
    metadata.update({"user_id": user_id or "", "email": email or ""})

    try:
        session_id, url = await stripe_service.create_checkout_session(
            stripe_client, cart, customer_email=email, metadata=metadata,
        )
    except OrderServiceError:
        checkout_sessions_counter.labels(rail=PaymentMethod.STRIPE, status="failed").inc()
        raise

    checkout_sessions_counter.labels(rail=PaymentMethod.STRIPE, status="created").inc()
    checkout_logger.info(f"Card checkout {session_id}: total={cart.total} user={user_id or 'anonymous'}")

    patch = build_ledger_patch(cart, PaymentMethod.STRIPE, settings.STRIPE_CURRENCY, user_id, email)
    await _record_pending(db, session_id, patch)
    return CheckoutResult(url=url, session_id=session_id, payment_method=PaymentMethod.STRIPE)


def _describe(cart: PricedCart) -> str:
    names = ", ".join(f"{item.quantity} x {item.name}" for item in cart.items)
    return names[:100] or "Order"


async def create_mobile_money_checkout(
    db: AsyncSession,
    pesapal_client: Optional[PesapalClient],
    cart: PricedCart,
    identity: Optional[Identity] = None,
    client_email: Optional[str] = None,
) -> CheckoutResult:
    """Same contract as card checkout, on the Pesapal rail; the tracking id is the session id"""
    user_id, email = resolve_customer(identity, client_email)
    reference = uuid.uuid4().hex

    try:
        if pesapal_client is None or not pesapal_client.configured:
            checkout_logger.error("Mobile money checkout requested but Pesapal credentials are not configured")
            raise ConfigurationError("Missing Pesapal credentials on server")
        tracking_id, url = await pesapal_client.submit_order(
            reference=reference,
            amount=cart.total,
            description=_describe(cart),
            callback_url=f"{settings.FRONTEND_URL}{PESAPAL_CALLBACK_PATH}",
            email=email,
        )
    except OrderServiceError:
        checkout_sessions_counter.labels(rail=PaymentMethod.PESAPAL, status="failed").inc()
        raise

    checkout_sessions_counter.labels(rail=PaymentMethod.PESAPAL, status="created").inc()
    checkout_logger.info(f"Mobile money checkout {tracking_id} (ref {reference}): total={cart.total}")

    patch = build_ledger_patch(cart, PaymentMethod.PESAPAL, pesapal_client.currency, user_id, email)
    await _record_pending(db, tracking_id, patch)
    return CheckoutResult(url=url, session_id=tracking_id, payment_method=PaymentMethod.PESAPAL)
