"""Order history API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import NotFoundError
from app.core.providers import get_stripe_client
from app.core.security import Identity, require_identity
from app.db.session import get_db
from app.services.enrichment_service import enrich_order, enrich_orders
from app.services.order_service import claim_orders, get_order, is_owner, list_orders_for

router = APIRouter(prefix="/api/orders", tags=["orders"])
logger = logging.getLogger(__name__)


@router.get("")
async def get_orders(
    session_id: Optional[str] = Query(None),
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """List the caller's orders, or fetch one by session id"""
    if session_id:
        order = await get_order(db, session_id)
        if not order or not is_owner(order, identity.user_id, identity.email):
            raise NotFoundError("Order not found")
        order = await enrich_order(db, stripe_client, order)
        return {"orders": [order.to_dict()]}

    orders = await list_orders_for(db, identity.user_id, identity.email, limit=settings.ORDERS_PAGE_LIMIT)
    orders = await enrich_orders(db, stripe_client, orders)
    return {"orders": [order.to_dict() for order in orders]}


@router.post("/claim")
async def claim(identity: Identity = Depends(require_identity), db: AsyncSession = Depends(get_db)):
    """Attach anonymous orders placed with the caller's email to their account"""
    claimed = await claim_orders(db, identity.user_id, identity.email)
    return {"ok": True, "claimed": claimed}
