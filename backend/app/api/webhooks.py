"""Payment provider webhook routes"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.core.providers import get_pesapal_client
from app.db.session import get_db
from app.schemas.webhooks import PesapalNotification
from app.services.webhook_service import process_pesapal_notification, process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Handle Stripe webhook events

    The body is read as raw bytes; signature verification needs it unparsed.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await process_stripe_webhook(db, payload, sig_header)


async def _pesapal_notification(request: Request) -> PesapalNotification:
    fields = dict(request.query_params)
    if request.method == "POST":
        body = await request.body()
        if body:
            try:
                data = json.loads(body)
            except ValueError:
                raise ValidationError("Invalid notification body")
            if not isinstance(data, dict):
                raise ValidationError("Invalid notification body")
            fields.update(data)
    try:
        return PesapalNotification.model_validate(fields)
    except PydanticValidationError:
        raise ValidationError("Invalid notification fields")


@router.api_route("/pesapal", methods=["GET", "POST"])
async def pesapal_ipn(
    request: Request,
    db: AsyncSession = Depends(get_db),
    pesapal_client=Depends(get_pesapal_client),
):
    """Handle a Pesapal IPN (Pesapal may call with GET or POST)"""
    notification = await _pesapal_notification(request)
    if not notification.order_tracking_id:
        raise ValidationError("Missing order_tracking_id")

    return await process_pesapal_notification(
        db,
        pesapal_client,
        notification.order_tracking_id,
        notification_type=notification.order_notification_type,
        merchant_reference=notification.order_merchant_reference,
        ipn_id=notification.ipn_id,
    )
