import asyncio
import logging
import uuid
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.notifications.email import EmailService
from storefront.shared.money import from_paise
from storefront.shared.utils import Settings, utcnow, str_to_oid, BusinessRuleException
from storefront.shipping.carrier import CarrierClient, CarrierError

logger = logging.getLogger("storefront.shipping")


def unclaimed(cutoff: datetime) -> dict:
    """Orders no shipment run is working on; claims taken before ``cutoff`` have lapsed."""
    return {"$or": [{"shipping_claim": None}, {"shipping_claimed_at": {"$lt": cutoff}}]}


class ShipmentScheduler:
    """
    Moves paid orders to the courier.

    Each tick picks a bounded batch of ``processing`` orders that have no
    tracking number yet and, per order, creates the courier order, assigns an
    AWB and books a pickup. Progress is stored on the shipment after every
    step so a later tick resumes where a failed one stopped. A failing order
    is logged and left for the next tick; it never stops the batch.
    """

    def __init__(self, db: AsyncIOMotorDatabase, carrier: CarrierClient, mailer: EmailService, settings: Settings):
        self.db = db
        self.carrier = carrier
        self.mailer = mailer
        self.interval = settings.SHIPMENT_CRON_INTERVAL_SECONDS
        self.batch_size = settings.SHIPMENT_BATCH_SIZE
        self.max_attempts = settings.SHIPMENT_MAX_ATTEMPTS
        self.auto_pickup = settings.SHIPMENT_AUTO_PICKUP
        self.claim_timeout = timedelta(seconds=settings.SHIPMENT_CLAIM_TIMEOUT_SECONDS)
        self._task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Shipment scheduler started, interval {self.interval}s")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Shipment scheduler tick failed", extra={"job": "shipment_scheduler"})

    # --- Work ---

    async def run_once(self) -> dict:
        query = {
            "status": "processing",
            "tracking_number": None,
            "shipment_failed": {"$ne": True},
            **unclaimed(utcnow() - self.claim_timeout),
        }
        cursor = self.db.orders.find(query).sort("created_at", 1).limit(self.batch_size)
        orders = [doc async for doc in cursor]

        summary = {"processed": len(orders), "shipped": 0, "skipped": 0, "failed": 0}
        for order in orders:
            try:
                shipment = await self.process_order(order)
                summary["shipped" if shipment else "skipped"] += 1
            except CarrierError as e:
                summary["failed"] += 1
                logger.warning(
                    f"Shipment for {order['order_number']} failed: {e.detail}",
                    extra={"order_id": str(order["_id"])},
                )
            except Exception:
                summary["failed"] += 1
                logger.exception(
                    f"Unexpected error shipping {order['order_number']}",
                    extra={"order_id": str(order["_id"])},
                )

        if orders:
            logger.info(f"Shipment tick done: {summary}", extra={"job": "shipment_scheduler"})
        return summary

    async def process_order(self, order: dict) -> Optional[dict]:
        """
        Run the remaining courier steps for one order and mark it shipped.

        The order is claimed first, so a cron tick and a manual pickup never
        work on it at the same time and cancellation waits for the claim to be
        released. Returns None when the order was claimed elsewhere or stopped
        being shippable.
        """
        if order["status"] != "processing":
            raise BusinessRuleException("Only processing orders can be shipped")

        claim = await self._claim(order)
        if not claim:
            logger.info(f"Order {order['order_number']} is not free to ship, skipped", extra={"order_id": str(order["_id"])})
            return None
        try:
            return await self._ship(order, claim)
        finally:
            await self.db.orders.update_one(
                {"_id": order["_id"], "shipping_claim": claim},
                {"$unset": {"shipping_claim": "", "shipping_claimed_at": ""}},
            )

    async def _claim(self, order: dict) -> Optional[str]:
        now = utcnow()
        claim = uuid.uuid4().hex
        claimed = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": "processing", "tracking_number": None, **unclaimed(now - self.claim_timeout)},
            {"$set": {"shipping_claim": claim, "shipping_claimed_at": now}},
        )
        return claim if claimed else None

    async def _still_shippable(self, order: dict, shipment: dict) -> bool:
        current = await self.db.orders.find_one({"_id": order["_id"]})
        if current and current["status"] == "processing" and not current.get("tracking_number"):
            return True

        logger.warning(
            f"Order {order['order_number']} changed while being shipped, stopping",
            extra={"order_id": str(order["_id"])},
        )
        if current and current["status"] == "cancelled" and shipment.get("carrier_order_id"):
            await self.carrier.cancel_orders([shipment["carrier_order_id"]])
            await self._update_shipment(shipment, {"cancelled_at": utcnow()})
        return False

    async def _ship(self, order: dict, claim: str) -> Optional[dict]:
        order_id = str(order["_id"])
        shipment = await self._get_or_create_shipment(order)
        try:
            if not shipment.get("carrier_order_id"):
                created = await self.carrier.create_order(await self._carrier_payload(order))
                shipment = await self._update_shipment(shipment, {
                    "carrier_order_id": created["order_id"],
                    "carrier_shipment_id": created["shipment_id"],
                })
                if not await self._still_shippable(order, shipment):
                    return None

            if not shipment.get("awb_code"):
                courier = (order.get("shipping_info") or {}).get("courier") or {}
                awb = await self.carrier.assign_awb(shipment["carrier_shipment_id"], courier.get("courier_company_id"))
                shipment = await self._update_shipment(shipment, {
                    "awb_code": awb["awb_code"],
                    "courier_name": awb.get("courier_name") or courier.get("courier_name"),
                    "courier_company_id": awb.get("courier_company_id") or courier.get("courier_company_id"),
                })
                if not await self._still_shippable(order, shipment):
                    return None

            if self.auto_pickup and not shipment.get("pickup_scheduled_at"):
                pickup = await self.carrier.generate_pickup(shipment["carrier_shipment_id"])
                shipment = await self._update_shipment(shipment, {
                    "pickup_scheduled_at": utcnow(),
                    "pickup_scheduled_date": pickup.get("pickup_scheduled_date"),
                    "pickup_token": pickup.get("pickup_token_number"),
                })
        except CarrierError as e:
            await self._record_failure(order, shipment, e.detail)
            raise

        now = utcnow()
        await self._update_shipment(shipment, {"shipped_at": now, "last_error": None})
        result = await self.db.orders.update_one(
            {"_id": order["_id"], "status": "processing", "tracking_number": None, "shipping_claim": claim},
            {"$set": {
                "status": "shipped",
                "tracking_number": shipment["awb_code"],
                "courier_name": shipment.get("courier_name"),
                "shipped_at": now,
                "updated_at": now,
            }},
        )
        if result.modified_count:
            logger.info(f"Order {order['order_number']} shipped with AWB {shipment['awb_code']}", extra={"order_id": order_id})
            user = await self._owner(order)
            if user:
                await self.mailer.send_order_shipped(user["email"], order, shipment["awb_code"], shipment.get("courier_name"))
        return shipment

    async def _owner(self, order: dict) -> Optional[dict]:
        return await self.db.users.find_one({"_id": str_to_oid(order["user_id"])})

    async def _get_or_create_shipment(self, order: dict) -> dict:
        order_id = str(order["_id"])
        await self.db.shipments.update_one(
            {"order_id": order_id},
            {"$setOnInsert": {
                "order_id": order_id,
                "order_number": order["order_number"],
                "attempts": 0,
                "last_error": None,
                "created_at": utcnow(),
            }},
            upsert=True,
        )
        return await self.db.shipments.find_one({"order_id": order_id})

    async def _update_shipment(self, shipment: dict, changes: dict) -> dict:
        changes["updated_at"] = utcnow()
        await self.db.shipments.update_one({"_id": shipment["_id"]}, {"$set": changes})
        return {**shipment, **changes}

    async def _record_failure(self, order: dict, shipment: dict, error: str):
        updated = await self.db.shipments.find_one_and_update(
            {"_id": shipment["_id"]},
            {"$inc": {"attempts": 1}, "$set": {"last_error": error, "last_attempt_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        attempts = updated["attempts"] if updated else shipment.get("attempts", 0) + 1
        if self.max_attempts and attempts >= self.max_attempts:
            await self.db.orders.update_one({"_id": order["_id"]}, {"$set": {"shipment_failed": True}})
            logger.error(
                f"Giving up on shipment for {order['order_number']} after {attempts} attempts",
                extra={"order_id": str(order["_id"])},
            )

    async def reset_failures(self, order: dict):
        """Put a dead-lettered order back into the scheduler's queue."""
        await self.db.orders.update_one({"_id": order["_id"]}, {"$unset": {"shipment_failed": ""}})
        await self.db.shipments.update_one({"order_id": str(order["_id"])}, {"$set": {"attempts": 0}})

    async def _carrier_payload(self, order: dict) -> dict:
        user = await self._owner(order)
        address = order["shipping_address"]
        info = order.get("shipping_info") or {}
        package = info.get("package") or {}
        warehouse = info.get("warehouse") or {}
        first, _, last = address["full_name"].partition(" ")
        return {
            "order_id": order["order_number"],
            "order_date": order["created_at"].strftime("%Y-%m-%d %H:%M"),
            "pickup_location": warehouse.get("name", "Primary"),
            "billing_customer_name": first,
            "billing_last_name": last,
            "billing_address": address["line1"],
            "billing_address_2": address.get("line2") or "",
            "billing_city": address["city"],
            "billing_pincode": address["pincode"],
            "billing_state": address["state"],
            "billing_country": address.get("country", "India"),
            "billing_email": user["email"] if user else "",
            "billing_phone": address["phone"],
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item["name"],
                    "sku": item["sku"],
                    "units": item["quantity"],
                    "selling_price": float(from_paise(item["unit_price"])),
                    "hsn": item.get("hsn_code") or "",
                }
                for item in order["items"]
            ],
            "payment_method": "COD" if order["payment_method"] == "cod" else "Prepaid",
            "shipping_charges": float(from_paise(order["shipping_cost"])),
            "total_discount": float(from_paise(order["discount"])),
            "sub_total": float(from_paise(order["subtotal"])),
            "length": package.get("length"),
            "breadth": package.get("breadth"),
            "height": package.get("height"),
            "weight": package.get("chargeable_weight") or package.get("weight"),
        }
