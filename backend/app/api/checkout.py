"""Checkout API routes"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.providers import get_pesapal_client, get_stripe_client
from app.core.security import Identity, get_identity
from app.db.session import get_db
from app.schemas.checkout import CheckoutRequest, CheckoutResponse
from app.services.checkout_service import create_card_checkout, create_mobile_money_checkout
from app.services.pricing_service import price_cart

router = APIRouter(prefix="/api/checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


@router.post("", response_model=CheckoutResponse)
async def create_checkout(
    request_data: CheckoutRequest,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """Create a card checkout session and return its redirect URL"""
    cart = price_cart(**request_data.pricing_kwargs())
    result = await create_card_checkout(db, stripe_client, cart, identity=identity, client_email=request_data.email)
    return result.to_response()


@router.post("/mobile-money", response_model=CheckoutResponse)
async def create_mobile_money(
    request_data: CheckoutRequest,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    pesapal_client=Depends(get_pesapal_client),
):
    """Create a Pesapal mobile money order and return its redirect URL"""
    cart = price_cart(**request_data.pricing_kwargs())
    result = await create_mobile_money_checkout(db, pesapal_client, cart, identity=identity, client_email=request_data.email)
    return result.to_response()
