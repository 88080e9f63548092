"""Payment provider clients owned by the application lifespan"""
import logging

from fastapi import Request

from app.services.pesapal_service import PesapalClient
from app.services.stripe_service import build_stripe_client

logger = logging.getLogger(__name__)


def open_providers(app):
    """Construct provider clients once per process and attach them to app.state"""
    app.state.stripe_client = build_stripe_client()
    pesapal = PesapalClient.from_settings()
    if not pesapal.configured:
        logger.warning("Pesapal credentials not set - mobile money checkout is disabled")
    app.state.pesapal_client = pesapal


async def close_providers(app):
    pesapal = getattr(app.state, "pesapal_client", None)
    if pesapal is not None:
        await pesapal.aclose()


def get_stripe_client(request: Request):
    """Dependency: the Stripe client (None when not configured)"""
    return getattr(request.app.state, "stripe_client", None)


def get_pesapal_client(request: Request):
    """Dependency: the Pesapal client (None before startup)"""
    return getattr(request.app.state, "pesapal_client", None)
