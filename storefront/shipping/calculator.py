import logging
from typing import List, Optional

from storefront.shared.utils import Settings
from storefront.shipping.carrier import CarrierClient, CarrierError, CourierOption

logger = logging.getLogger("storefront.shipping")

VOLUMETRIC_DIVISOR = 5000


def volumetric_weight(length: float, breadth: float, height: float) -> float:
    return round(length * breadth * height / VOLUMETRIC_DIVISOR, 3)


def build_package(lines: List[dict]) -> dict:
    """
    One box for all lines: longest length, widest breadth, heights stacked.
    Chargeable weight is the larger of actual and volumetric weight.
    """
    weight = sum(line["weight"] * line["quantity"] for line in lines)
    length = max(line["length"] for line in lines)
    breadth = max(line["breadth"] for line in lines)
    height = sum(line["height"] * line["quantity"] for line in lines)
    volumetric = volumetric_weight(length, breadth, height)
    return {
        "weight": round(weight, 3),
        "length": length,
        "breadth": breadth,
        "height": height,
        "volumetric_weight": volumetric,
        "chargeable_weight": round(max(weight, volumetric), 3),
    }


class ShippingCalculator:
    def __init__(self, carrier: CarrierClient, settings: Settings):
        self.carrier = carrier
        self.free_shipping_threshold = settings.FREE_SHIPPING_THRESHOLD
        self.fallback_fee = settings.DEFAULT_SHIPPING_FEE

    async def quote(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        lines: List[dict],
        subtotal: int,
        cod: bool = False,
        courier_id: Optional[int] = None,
        preference: str = "cheapest",
    ) -> dict:
        package = build_package(lines)
        is_free = subtotal >= self.free_shipping_threshold

        try:
            options = await self.carrier.check_serviceability(
                pickup_pincode, delivery_pincode, package["chargeable_weight"], cod
            )
        except CarrierError as e:
            # Courier API down: charge the flat fee and let the scheduler pick a courier later
            logger.warning(f"Serviceability check failed, using flat shipping fee: {e.detail}")
            return {
                "serviceable": True,
                "shipping_cost": 0 if is_free else self.fallback_fee,
                "is_free_shipping": is_free,
                "courier": None,
                "options": [],
                "package": package,
            }

        if not options:
            return {
                "serviceable": False,
                "shipping_cost": 0,
                "is_free_shipping": False,
                "courier": None,
                "options": [],
                "package": package,
            }

        courier = self.select(options, courier_id, preference)
        return {
            "serviceable": True,
            "shipping_cost": 0 if is_free else courier.freight_charge,
            "is_free_shipping": is_free,
            "courier": courier.model_dump(),
            "options": [o.model_dump() for o in options],
            "package": package,
        }

    @staticmethod
    def select(options: List[CourierOption], courier_id: Optional[int] = None, preference: str = "cheapest") -> CourierOption:
        if courier_id is not None:
            for option in options:
                if option.courier_company_id == courier_id:
                    return option
        if preference == "fastest":
            return min(options, key=lambda o: (o.estimated_delivery_days or 999, o.freight_charge))
        return min(options, key=lambda o: (o.freight_charge, o.estimated_delivery_days or 999))
