"""Enrichment service - backfill missing order items from the payment provider

Best effort: any failure is logged and the order is returned unchanged.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import enrichment_logger
from app.core.metrics import enrichment_counter
from app.models.order import Order, PaymentMethod
from app.services import order_service, stripe_service
from app.services.pricing_service import SURCHARGE_LINE_NAMES, from_cents, round2
from app.services.stripe_service import _get_stripe_value

_SURCHARGE_NAMES = {name.lower() for name in SURCHARGE_LINE_NAMES} | {"shipping", "tax", "tip"}


def is_surcharge(name: str) -> bool:
    normalized = (name or "").strip().lower()
    return normalized in _SURCHARGE_NAMES or normalized.startswith("tip (")


def needs_enrichment(order: Order) -> bool:
    return not order.items and order.payment_method == PaymentMethod.STRIPE


def items_from_line_items(line_items: Iterable[Any]) -> List[Dict[str, Any]]:
    """Rebuild ledger items from Stripe line items, dropping surcharge lines"""
    items = []
    for line in line_items:
        price = _get_stripe_value(line, "price")
        product = _get_stripe_value(price, "product")
        if isinstance(product, str):
            product = None  # not expanded

        name = _get_stripe_value(line, "description") or _get_stripe_value(product, "name")
        if not name or is_surcharge(name):
            continue

        quantity = max(1, int(_get_stripe_value(line, "quantity", 1)))
        unit_amount = _get_stripe_value(price, "unit_amount")
        if unit_amount is not None:
            unit_price = from_cents(unit_amount)
        else:
            amount_total = _get_stripe_value(line, "amount_total", 0)
            unit_price = round2(Decimal(int(amount_total)) / 100 / quantity)

        item = {"name": str(name), "quantity": quantity, "unit_price": float(unit_price)}
        images = _get_stripe_value(product, "images") or []
        if images:
            item["image"] = images[0]
        items.append(item)
    return items


async def enrich_order(db: AsyncSession, stripe_client, order: Order) -> Order:
    """Fill ``order.items`` from Stripe when it has none; never overwrites existing items"""
    if not needs_enrichment(order):
        return order
    if stripe_client is None:
        enrichment_counter.labels(outcome="skipped").inc()
        return order

    try:
        line_items = await stripe_service.list_session_line_items(stripe_client, order.session_id)
        items = items_from_line_items(line_items)
        if not items:
            enrichment_counter.labels(outcome="empty").inc()
            enrichment_logger.info(f"No product lines found for order {order.session_id}")
            return order

        stored = await order_service.set_items_if_empty(db, order.session_id, items)
        refreshed = await order_service.get_order(db, order.session_id)
    except Exception as e:
        enrichment_counter.labels(outcome="failed").inc()
        enrichment_logger.warning(f"Failed to enrich order {order.session_id}: {e}")
        return order

    enrichment_counter.labels(outcome="stored" if stored else "raced").inc()
    if stored:
        enrichment_logger.info(f"Backfilled {len(items)} item(s) for order {order.session_id}")
    return refreshed or order


async def enrich_orders(db: AsyncSession, stripe_client, orders: List[Order], limit: Optional[int] = None) -> List[Order]:
    """
    Enrich at most ``limit`` orders from a listing; the rest are returned as-is.

    Later reads pick up the remaining backlog.
    """
    limit = settings.ENRICH_MAX_PER_REQUEST if limit is None else limit
    attempted = 0
    result = []
    for order in orders:
        if attempted < limit and needs_enrichment(order):
            attempted += 1
            order = await enrich_order(db, stripe_client, order)
        result.append(order)
    return result
