"""Pydantic schemas for provider notifications"""
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class PesapalNotification(BaseModel):
    """Pesapal IPN, from either the query string (GET) or a JSON body (POST)"""
    order_tracking_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("OrderTrackingId", "orderTrackingId", "order_tracking_id")
    )
    order_notification_type: Optional[str] = Field(
        None, validation_alias=AliasChoices(
            "OrderNotificationType", "orderNotificationType", "NotificationType", "notification_type",
        )
    )
    order_merchant_reference: Optional[str] = Field(
        None, validation_alias=AliasChoices(
            "OrderMerchantReference", "orderMerchantReference", "merchant_reference",
        )
    )
    ipn_id: Optional[str] = Field(None, validation_alias=AliasChoices("IpnId", "ipn_id"))
