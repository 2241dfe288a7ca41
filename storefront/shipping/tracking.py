import logging
import re
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.coupons.service import CouponService
from storefront.inventory.service import StockService
from storefront.notifications.email import EmailService
from storefront.orders.holds import release_holds
from storefront.orders.models import OrderStatus
from storefront.payments.gateway import GatewayError
from storefront.payments.service import PaymentService
from storefront.shared.security_config import token_matches
from storefront.shared.utils import Settings, utcnow, str_to_oid, UnauthorizedException

logger = logging.getLogger("storefront.shipping")

# Courier statuses we act on; anything else is only recorded on the shipment
CARRIER_STATUS_MAP = {
    "PICKED_UP": OrderStatus.SHIPPED,
    "SHIPPED": OrderStatus.SHIPPED,
    "IN_TRANSIT": OrderStatus.SHIPPED,
    "OUT_FOR_DELIVERY": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "RTO": OrderStatus.CANCELLED,
    "RTO_INITIATED": OrderStatus.CANCELLED,
    "RTO_DELIVERED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "LOST": OrderStatus.CANCELLED,
}

# Order statuses each courier update may move an order out of; updates never go backwards
MOVES_FROM = {
    OrderStatus.SHIPPED: [OrderStatus.PROCESSING.value],
    OrderStatus.DELIVERED: [OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value],
    OrderStatus.CANCELLED: [OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value],
}


def normalize_status(status: Optional[str]) -> str:
    return re.sub(r"[\s\-]+", "_", (status or "").strip().upper())


class CarrierStatusService:
    """
    Applies the courier's status pushes to orders.

    Pickup and transit updates move a ``processing`` order to ``shipped``,
    delivery moves it to ``delivered`` and collects COD, and RTO, lost or
    courier-cancelled shipments cancel the order and refund it. Every move is a
    guarded update from the allowed statuses, so repeated or out-of-order
    pushes change nothing.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        payments: PaymentService,
        stock: StockService,
        coupons: CouponService,
        mailer: EmailService,
    ):
        self.db = db
        self.token = settings.SHIPROCKET_WEBHOOK_TOKEN
        self.payments = payments
        self.stock = stock
        self.coupons = coupons
        self.mailer = mailer

    async def handle_webhook(self, payload: dict, token: Optional[str]) -> dict:
        if not token_matches(token, self.token):
            logger.warning("Rejected courier webhook with a bad token", extra={"event": "carrier_webhook"})
            raise UnauthorizedException("Invalid webhook token")

        awb = payload.get("awb")
        raw_status = payload.get("current_status") or payload.get("shipment_status")
        result = {"awb": awb, "status": raw_status, "handled": False}

        shipment = await self._find_shipment(payload)
        if not shipment:
            logger.warning(f"Courier update for unknown shipment {awb or payload.get('order_id')}")
            return result

        now = utcnow()
        await self.db.shipments.update_one(
            {"_id": shipment["_id"]},
            {"$set": {"carrier_status": raw_status, "carrier_status_at": now, "updated_at": now}},
        )

        target = CARRIER_STATUS_MAP.get(normalize_status(raw_status))
        if target is None:
            return result

        order = await self.db.orders.find_one({"_id": str_to_oid(shipment["order_id"])})
        if not order or order["status"] not in MOVES_FROM[target]:
            return result

        if target == OrderStatus.CANCELLED:
            result["handled"] = await self._cancel(order, raw_status)
        else:
            result["handled"] = await self._advance(order, shipment, target, now)
        return result

    async def _find_shipment(self, payload: dict) -> Optional[dict]:
        if payload.get("awb"):
            shipment = await self.db.shipments.find_one({"awb_code": str(payload["awb"])})
            if shipment:
                return shipment
        if payload.get("shipment_id"):
            shipment = await self.db.shipments.find_one({"carrier_shipment_id": str(payload["shipment_id"])})
            if shipment:
                return shipment
        if payload.get("order_id"):
            # The courier echoes our order number as its channel order id
            return await self.db.shipments.find_one({"order_number": str(payload["order_id"])})
        return None

    async def _advance(self, order: dict, shipment: dict, target: OrderStatus, now) -> bool:
        changes = {"status": target.value, "updated_at": now}
        if not order.get("tracking_number") and shipment.get("awb_code"):
            changes.update({
                "tracking_number": shipment["awb_code"],
                "courier_name": shipment.get("courier_name"),
                "shipped_at": now,
            })
        if target == OrderStatus.DELIVERED:
            changes["delivered_at"] = now

        moved = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": {"$in": MOVES_FROM[target]}},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not moved:
            return False

        order_id = str(order["_id"])
        logger.info(
            f"Order {order['order_number']} moved {order['status']} -> {target.value} by courier",
            extra={"order_id": order_id, "order_number": order["order_number"], "event": "carrier_webhook"},
        )
        owner = await self.db.users.find_one({"_id": str_to_oid(order["user_id"])})
        if target == OrderStatus.DELIVERED:
            await self.payments.mark_cod_collected(order_id)
            await self.db.shipments.update_one({"_id": shipment["_id"]}, {"$set": {"delivered_at": now}})
            if owner:
                await self.mailer.send_order_delivered(owner["email"], moved)
        elif owner and moved.get("tracking_number"):
            await self.mailer.send_order_shipped(owner["email"], moved, moved["tracking_number"], moved.get("courier_name"))
        return True

    async def _cancel(self, order: dict, carrier_status: str) -> bool:
        now = utcnow()
        reason = f"Shipment {carrier_status.lower()} by courier"
        cancelled = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": {"$in": MOVES_FROM[OrderStatus.CANCELLED]}},
            {"$set": {"status": OrderStatus.CANCELLED.value, "cancellation_reason": reason,
                      "cancelled_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not cancelled:
            return False

        order_id = str(order["_id"])
        # Goods that already left come back through RTO and are restocked by hand on arrival
        if order["status"] == OrderStatus.PROCESSING.value:
            await release_holds(self.stock, self.coupons, cancelled, notes=reason)

        refund_amount = 0
        try:
            refund_amount = await self.payments.refund(cancelled, cancelled["total"], notes=reason)
        except GatewayError as e:
            logger.error(f"Refund for {order['order_number']} after courier cancellation failed: {e.detail}",
                         extra={"order_id": order_id})
            await self.db.orders.update_one({"_id": order["_id"]}, {"$set": {"refund_failed": True}})

        logger.warning(f"Order {order['order_number']} cancelled: {reason}", extra={"order_id": order_id})
        owner = await self.db.users.find_one({"_id": str_to_oid(order["user_id"])})
        if owner:
            await self.mailer.send_order_cancelled(owner["email"], cancelled, reason, refund_amount)
        return True
