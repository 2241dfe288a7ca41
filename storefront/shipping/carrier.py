import logging
from datetime import timedelta
from typing import List, Optional

import httpx
from pydantic import BaseModel

from storefront.shared.utils import Settings, ServiceUnavailableException, utcnow

logger = logging.getLogger("storefront.shipping")

# Shiprocket tokens are valid for 10 days; refresh a day early
TOKEN_TTL = timedelta(days=9)


class CarrierError(ServiceUnavailableException):
    def __init__(self, detail: str = "Courier service unavailable"):
        super().__init__(detail)


class CourierOption(BaseModel):
    courier_company_id: int
    courier_name: str
    freight_charge: int
    estimated_delivery_days: Optional[int] = None
    etd: Optional[str] = None


class CarrierClient:
    """Operations the shipping flow needs from a courier aggregator."""

    async def check_serviceability(
        self, pickup_pincode: str, delivery_pincode: str, weight: float, cod: bool = False
    ) -> List[CourierOption]:
        raise NotImplementedError

    async def create_order(self, payload: dict) -> dict:
        """Returns ``{"order_id", "shipment_id"}`` from the carrier."""
        raise NotImplementedError

    async def assign_awb(self, shipment_id: str, courier_id: Optional[int] = None) -> dict:
        """Returns ``{"awb_code", "courier_name", "courier_company_id"}``."""
        raise NotImplementedError

    async def generate_pickup(self, shipment_id: str) -> dict:
        raise NotImplementedError

    async def track(self, awb_code: str) -> dict:
        raise NotImplementedError

    async def cancel_orders(self, carrier_order_ids: List[str]) -> dict:
        raise NotImplementedError

    async def create_return_order(self, payload: dict) -> dict:
        raise NotImplementedError

    async def close(self):
        pass


class ShiprocketClient(CarrierClient):
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.email = settings.SHIPROCKET_EMAIL
        self.password = settings.SHIPROCKET_PASSWORD
        self.client = client or httpx.AsyncClient(
            base_url=settings.SHIPROCKET_API_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        self._token: Optional[str] = None
        self._token_expires_at = None

    async def _authenticate(self) -> str:
        if self._token and self._token_expires_at and utcnow() < self._token_expires_at:
            return self._token
        try:
            response = await self.client.post("/auth/login", json={"email": self.email, "password": self.password})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Shiprocket authentication failed: {e}")
            raise CarrierError("Courier authentication failed")

        self._token = response.json().get("token")
        if not self._token:
            raise CarrierError("Courier authentication failed")
        self._token_expires_at = utcnow() + TOKEN_TTL
        return self._token

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        for attempt in range(2):
            token = await self._authenticate()
            try:
                response = await self.client.request(
                    method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
            except httpx.TimeoutException:
                raise CarrierError(f"Courier request timed out: {path}")
            except httpx.HTTPError as e:
                raise CarrierError(f"Courier request failed: {e}")

            # Token revoked server side: log in again once
            if response.status_code == 401 and attempt == 0:
                self._token = None
                continue
            if response.status_code >= 400:
                logger.error(f"Shiprocket {method} {path} returned {response.status_code}: {response.text}")
                raise CarrierError(f"Courier request failed with status {response.status_code}")
            return response.json()
        raise CarrierError("Courier authentication failed")

    async def check_serviceability(
        self, pickup_pincode: str, delivery_pincode: str, weight: float, cod: bool = False
    ) -> List[CourierOption]:
        data = await self._request("GET", "/courier/serviceability/", params={
            "pickup_postcode": pickup_pincode,
            "delivery_postcode": delivery_pincode,
            "weight": weight,
            "cod": 1 if cod else 0,
        })
        companies = (data.get("data") or {}).get("available_courier_companies") or []
        options = []
        for company in companies:
            days = company.get("estimated_delivery_days")
            options.append(CourierOption(
                courier_company_id=int(company["courier_company_id"]),
                courier_name=company.get("courier_name", ""),
                freight_charge=round(float(company.get("freight_charge", 0)) * 100),
                estimated_delivery_days=int(days) if str(days or "").isdigit() else None,
                etd=company.get("etd"),
            ))
        return options

    async def create_order(self, payload: dict) -> dict:
        data = await self._request("POST", "/orders/create/adhoc", json=payload)
        if not data.get("order_id") or not data.get("shipment_id"):
            raise CarrierError(f"Courier rejected order: {data.get('message', 'unknown error')}")
        return {"order_id": str(data["order_id"]), "shipment_id": str(data["shipment_id"])}

    async def assign_awb(self, shipment_id: str, courier_id: Optional[int] = None) -> dict:
        body = {"shipment_id": shipment_id}
        if courier_id:
            body["courier_id"] = courier_id
        data = await self._request("POST", "/courier/assign/awb", json=body)
        awb = ((data.get("response") or {}).get("data")) or {}
        if not awb.get("awb_code"):
            raise CarrierError(f"AWB assignment failed: {data.get('message', 'no AWB returned')}")
        return {
            "awb_code": awb["awb_code"],
            "courier_name": awb.get("courier_name"),
            "courier_company_id": awb.get("courier_company_id"),
        }

    async def generate_pickup(self, shipment_id: str) -> dict:
        data = await self._request("POST", "/courier/generate/pickup", json={"shipment_id": [shipment_id]})
        response = data.get("response") or {}
        return {
            "pickup_scheduled_date": response.get("pickup_scheduled_date"),
            "pickup_token_number": response.get("pickup_token_number"),
        }

    async def track(self, awb_code: str) -> dict:
        data = await self._request("GET", f"/courier/track/awb/{awb_code}")
        tracking = data.get("tracking_data") or {}
        activities = tracking.get("shipment_track_activities") or []
        return {
            "awb_code": awb_code,
            "current_status": (tracking.get("shipment_track") or [{}])[0].get("current_status"),
            "etd": tracking.get("etd"),
            "track_url": tracking.get("track_url"),
            "activities": [
                {"date": a.get("date"), "status": a.get("activity"), "location": a.get("location")}
                for a in activities
            ],
        }

    async def cancel_orders(self, carrier_order_ids: List[str]) -> dict:
        return await self._request("POST", "/orders/cancel", json={"ids": [int(i) for i in carrier_order_ids]})

    async def create_return_order(self, payload: dict) -> dict:
        data = await self._request("POST", "/orders/create/return", json=payload)
        return {"order_id": str(data.get("order_id")), "shipment_id": str(data.get("shipment_id"))}

    async def close(self):
        await self.client.aclose()
