"""Order service - the order ledger and its status state machine"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import LedgerError
from app.db.merge import MergePolicy, Rule
from app.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

# Settlement events reported by payment providers
EVENT_COMPLETED = "completed"
EVENT_ASYNC_SUCCEEDED = "async_succeeded"
EVENT_EXPIRED = "expired"
EVENT_ASYNC_FAILED = "async_failed"

EVENT_TARGET_STATUS = {
    EVENT_COMPLETED: OrderStatus.PAID,
    EVENT_ASYNC_SUCCEEDED: OrderStatus.PAID,
    EVENT_EXPIRED: OrderStatus.EXPIRED,
    EVENT_ASYNC_FAILED: OrderStatus.FAILED,
}

PRICING_COLUMNS = ("location", "subtotal", "shipping", "tax", "discount_code", "discount_amount", "tip_amount")

# Written by the checkout path: a retried session refreshes amounts and cart
# but never regresses a settled row or replaces known identity.
CHECKOUT_POLICY = MergePolicy(
    name="checkout",
    rules={
        "status": Rule.INSERT_ONLY,
        "payment_method": Rule.INSERT_ONLY,
        "paid_at": Rule.INSERT_ONLY,
        "error": Rule.INSERT_ONLY,
        "total": Rule.STICKY_PAID,
        "currency": Rule.STICKY_PAID,
        "client_total": Rule.REPLACE,
        "items": Rule.NON_EMPTY,
        "email": Rule.FIRST_NON_NULL,
        "user_id": Rule.FIRST_NON_NULL,
        "customer_name": Rule.FIRST_NON_NULL,
        **{column: Rule.REPLACE for column in PRICING_COLUMNS},
    },
)

# Written by provider notifications: paid is sticky, paid_at is set once.
WEBHOOK_POLICY = MergePolicy(
    name="webhook",
    rules={
        "status": Rule.STICKY_PAID,
        "error": Rule.STICKY_PAID,
        "paid_at": Rule.FIRST_NON_NULL,
        "total": Rule.STICKY_PAID,
        "currency": Rule.STICKY_PAID,
        "payment_method": Rule.INSERT_ONLY,
        "items": Rule.NON_EMPTY,
        "email": Rule.FIRST_NON_NULL,
        "user_id": Rule.FIRST_NON_NULL,
        "customer_name": Rule.FIRST_NON_NULL,
        "ipn_id": Rule.REPLACE,
        **{column: Rule.FIRST_NON_NULL for column in PRICING_COLUMNS},
    },
)


def next_status(current: Optional[str], event: str) -> str:
    """
    Resulting status for a settlement event.

    ``paid`` is the only sticky state; ``failed`` and ``expired`` can still
    move to ``paid`` when the provider later reports success.
    """
    if event not in EVENT_TARGET_STATUS:
        raise ValueError(f"Unknown settlement event: {event}")
    if current == OrderStatus.PAID:
        return OrderStatus.PAID
    return EVENT_TARGET_STATUS[event]


def settlement_patch(event: str, error: Optional[str] = None, **facts) -> Dict[str, Any]:
    """Build the WEBHOOK_POLICY patch for an event; ``facts`` with None values are dropped"""
    status = EVENT_TARGET_STATUS[event]
    patch: Dict[str, Any] = {"status": status}
    if status == OrderStatus.PAID:
        patch["paid_at"] = datetime.now(timezone.utc)
        patch["error"] = None
    else:
        patch["error"] = error or status
    for key, value in facts.items():
        if value is not None:
            patch[key] = value
    return patch


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise LedgerError(f"Unsupported ledger database dialect: {dialect}")


async def merge_order(db: AsyncSession, session_id: str, patch: Mapping[str, Any], policy: MergePolicy) -> Optional[Order]:
    """
    Insert the order row for ``session_id`` or merge ``patch`` into it.

    One ``INSERT ... ON CONFLICT (session_id) DO UPDATE`` statement, so
    concurrent writers for the same session resolve inside the database.

    Raises:
        LedgerError: the statement could not be executed or committed
    """
    if not session_id:
        raise LedgerError("Cannot write an order without a session id")

    values = policy.prepare(patch)
    values.pop("session_id", None)
    now = datetime.now(timezone.utc)
    insert_values = {"created_at": now, "updated_at": now, **values, "session_id": session_id}
    insert_values.setdefault("status", OrderStatus.PENDING)

    try:
        insert = _insert_for(db)
        stmt = insert(Order).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Order.session_id],
            set_=policy.update_clause(Order.__table__, stmt.excluded, values),
        )
        await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Ledger merge failed for session {session_id} ({policy.name}): {e}")
        raise LedgerError("Failed to write order to ledger") from e

    logger.debug(f"Merged order {session_id} with {policy.name} policy: {sorted(values)}")
    return await get_order(db, session_id)


async def get_order(db: AsyncSession, session_id: str) -> Optional[Order]:
    """Get an order by its provider session id"""
    try:
        result = await db.execute(
            select(Order)
            .where(Order.session_id == session_id)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to read order {session_id}: {e}")
        raise LedgerError("Failed to read order") from e
    return result.scalars().first()


def _owned_by(user_id: Optional[str], email: Optional[str]):
    conditions = []
    if user_id:
        conditions.append(Order.user_id == str(user_id))
    if email:
        conditions.append(func.lower(Order.email) == email.strip().lower())
    return or_(*conditions) if conditions else None


def is_owner(order: Order, user_id: Optional[str], email: Optional[str]) -> bool:
    if user_id and order.user_id == str(user_id):
        return True
    if email and order.email and order.email.strip().lower() == email.strip().lower():
        return True
    return False


async def list_orders_for(db: AsyncSession, user_id: Optional[str], email: Optional[str], limit: int = 100) -> List[Order]:
    """Orders owned by the caller (user id or email match), newest first"""
    ownership = _owned_by(user_id, email)
    if ownership is None:
        return []
    try:
        result = await db.execute(
            select(Order)
            .where(ownership)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to list orders for user {user_id}: {e}")
        raise LedgerError("Failed to read orders") from e
    return list(result.scalars().all())


async def set_items_if_empty(db: AsyncSession, session_id: str, items: List[Dict[str, Any]]) -> bool:
    """
    Store ``items`` only while the row has none.

    Returns:
        True if this call populated the row, False if another writer got there first
    """
    if not items:
        return False
    try:
        result = await db.execute(
            update(Order)
            .where(Order.session_id == session_id, Order.items.is_(None))
            .values(items=items, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to store items for order {session_id}: {e}")
        raise LedgerError("Failed to store order items") from e
    return result.rowcount == 1


async def claim_orders(db: AsyncSession, user_id: str, email: str) -> int:
    """
    Attach anonymous orders placed with ``email`` to ``user_id``.

    Returns:
        Number of orders claimed
    """
    if not user_id or not email:
        return 0
    try:
        result = await db.execute(
            update(Order)
            .where(Order.user_id.is_(None), func.lower(Order.email) == email.strip().lower())
            .values(user_id=str(user_id), updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to claim orders for user {user_id}: {e}")
        raise LedgerError("Failed to claim orders") from e

    claimed = result.rowcount or 0
    if claimed:
        logger.info(f"Claimed {claimed} order(s) for user {user_id}")
    return claimed
