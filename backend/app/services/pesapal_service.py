"""Pesapal service - mobile money checkout (Pesapal API v3)

Pesapal pushes an IPN with only a tracking id; the payment outcome is always
pulled with ``GetTransactionStatus``.
"""
import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

AUTH_PATH = "/api/Auth/RequestToken"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"

# Pesapal bearer tokens are valid for five minutes
DEFAULT_TOKEN_TTL_SECONDS = 300
TOKEN_REFRESH_MARGIN_SECONDS = 60

# payment_status_description values returned by GetTransactionStatus
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_REVERSED = "reversed"
STATUS_INVALID = "invalid"

# status_code fallback when the description is missing
STATUS_CODES = {0: STATUS_INVALID, 1: STATUS_COMPLETED, 2: STATUS_FAILED, 3: STATUS_REVERSED}


class PesapalClient:
    """Pesapal API client owned by the application lifespan"""

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        ipn_id: str = "",
        currency: str = "UGX",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.ipn_id = ipn_id
        self.currency = currency
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls) -> "PesapalClient":
        return cls(
            base_url=settings.PESAPAL_BASE_URL,
            consumer_key=settings.PESAPAL_CONSUMER_KEY,
            consumer_secret=settings.PESAPAL_CONSUMER_SECRET,
            ipn_id=settings.PESAPAL_IPN_ID,
            currency=settings.PESAPAL_CURRENCY,
            timeout=settings.PESAPAL_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret)

    async def aclose(self):
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, path, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Pesapal {path} timed out")
            raise UpstreamError("Mobile money provider timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Pesapal {path} returned HTTP {e.response.status_code}: {e.response.text[:500]}")
            raise UpstreamError("Mobile money provider request failed") from e
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"Pesapal {path} request error: {e}")
            raise UpstreamError("Mobile money provider request failed") from e

        # Pesapal reports most failures in the body with HTTP 200
        if not isinstance(data, dict):
            raise UpstreamError("Mobile money provider returned an invalid response")
        error = data.get("error")
        if isinstance(error, dict):
            # Successful responses carry an error object with null fields
            error = error.get("message") or error.get("code") or error.get("error_type")
        if error:
            logger.error(f"Pesapal {path} error: {error}")
            raise UpstreamError("Mobile money provider rejected the request")
        return data

    async def get_token(self) -> str:
        """Bearer token, cached until shortly before it expires"""
        if not self.configured:
            raise ConfigurationError("Missing Pesapal credentials on server")
        if self._token and time.monotonic() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        data = await self._request("POST", AUTH_PATH, json={
            "consumer_key": self.consumer_key,
            "consumer_secret": self.consumer_secret,
        })
        token = data.get("token")
        if not token:
            raise UpstreamError("Mobile money provider did not issue a token")
        ttl = data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS
        self._token = token
        self._token_expires_at = time.monotonic() + float(ttl)
        return token

    async def submit_order(
        self,
        reference: str,
        amount,
        description: str,
        callback_url: str,
        email: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Register an order with Pesapal.

        Returns:
            (order_tracking_id, redirect_url)
        """
        if not self.ipn_id:
            raise ConfigurationError("Missing PESAPAL_IPN_ID on server")
        token = await self.get_token()
        payload = {
            "id": reference,
            "currency": currency or self.currency,
            "amount": float(amount),
            "description": description[:100],
            "callback_url": callback_url,
            "notification_id": self.ipn_id,
            "billing_address": {"email_address": email or ""},
        }
        data = await self._request(
            "POST", SUBMIT_ORDER_PATH, json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            raise UpstreamError("Mobile money provider returned an incomplete order")
        logger.info(f"Submitted Pesapal order {reference} -> tracking id {tracking_id}")
        return tracking_id, redirect_url

    async def get_transaction_status(self, order_tracking_id: str) -> Dict[str, Any]:
        token = await self.get_token()
        return await self._request(
            "GET", TRANSACTION_STATUS_PATH,
            params={"orderTrackingId": order_tracking_id},
            headers={"Authorization": f"Bearer {token}"},
        )


def payment_status(status_response: Dict[str, Any]) -> str:
    """Normalised payment status from a GetTransactionStatus response"""
    description = (status_response.get("payment_status_description") or "").strip().lower()
    if description:
        return description
    try:
        return STATUS_CODES.get(int(status_response.get("status_code")), STATUS_INVALID)
    except (TypeError, ValueError):
        return STATUS_INVALID
