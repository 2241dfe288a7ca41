import logging
from typing import Optional

import httpx

from storefront.shared.security_config import signature_matches
from storefront.shared.utils import Settings, ServiceUnavailableException

logger = logging.getLogger("storefront.payments")


class GatewayError(ServiceUnavailableException):
    def __init__(self, detail: str = "Payment gateway unavailable"):
        super().__init__(detail)


class PaymentGateway:
    """
    Remote payment sessions plus signature checks.

    Signature verification is implemented here, against the shared secrets;
    subclasses only supply the HTTP calls.
    """

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: Optional[str]) -> bool:
        payload = f"{gateway_order_id}|{gateway_payment_id}".encode()
        return signature_matches(payload, signature, self.key_secret)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        return signature_matches(body, signature, self.webhook_secret)

    async def create_order(self, amount: int, receipt: str, notes: Optional[dict] = None) -> dict:
        raise NotImplementedError

    async def fetch_payment(self, gateway_payment_id: str) -> dict:
        raise NotImplementedError

    async def refund(self, gateway_payment_id: str, amount: int, notes: Optional[dict] = None) -> dict:
        raise NotImplementedError

    async def close(self):
        pass


class RazorpayGateway(PaymentGateway):
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_WEBHOOK_SECRET)
        self.client = client or httpx.AsyncClient(
            base_url=settings.RAZORPAY_API_URL,
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise GatewayError("Payment gateway timed out")
        except httpx.HTTPError as e:
            raise GatewayError(f"Payment gateway request failed: {e}")

        if response.status_code >= 400:
            error = response.json().get("error", {}) if response.headers.get("content-type", "").startswith("application/json") else {}
            logger.error(f"Razorpay {method} {path} returned {response.status_code}: {error or response.text}")
            raise GatewayError(error.get("description") or f"Payment gateway returned {response.status_code}")
        return response.json()

    async def create_order(self, amount: int, receipt: str, notes: Optional[dict] = None) -> dict:
        return await self._request("POST", "/orders", json={
            "amount": amount,
            "currency": "INR",
            "receipt": receipt,
            "notes": notes or {},
        })

    async def fetch_payment(self, gateway_payment_id: str) -> dict:
        return await self._request("GET", f"/payments/{gateway_payment_id}")

    async def refund(self, gateway_payment_id: str, amount: int, notes: Optional[dict] = None) -> dict:
        return await self._request("POST", f"/payments/{gateway_payment_id}/refund", json={
            "amount": amount,
            "notes": notes or {},
        })

    async def close(self):
        await self.client.aclose()
