import logging
import secrets
import string
from datetime import timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.inventory.models import AdjustmentReason
from storefront.inventory.service import StockService, WarehouseService
from storefront.notifications.email import EmailService
from storefront.payments.service import PaymentService
from storefront.returns.models import (
    ReturnDB, ReturnItemDB, ReturnStatus, RefundMethod,
    FREE_RETURN_REASONS, INACTIVE_RETURN_STATUSES, ALLOWED_TRANSITIONS,
)
from storefront.returns.schemas import ReturnCreate, ReturnStatusUpdate
from storefront.shared.money import prorate, from_paise
from storefront.shared.utils import (
    Settings, utcnow, str_to_oid, serialize_doc,
    BusinessRuleException, NotFoundException, ForbiddenException, ValidationException,
)
from storefront.shipping.carrier import CarrierClient, CarrierError

logger = logging.getLogger("storefront.returns")


def generate_return_number() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"RET-{utcnow():%Y%m%d}-{suffix}"


def compute_refund(order: dict, items: List[dict], reason: str, return_shipping_fee: int) -> dict:
    """
    Refund for returning ``items`` of ``order``.

    Items are refunded at the price paid plus their share of the original
    shipping charge. Returns that are not our fault pay for the reverse
    pickup, and the refund never goes below zero.
    """
    items_refund = sum(item["unit_price"] * item["quantity"] for item in items)
    ordered_qty = sum(item["quantity"] for item in order["items"])
    returned_qty = sum(item["quantity"] for item in items)
    shipping_refund = prorate(order.get("shipping_cost", 0), returned_qty, ordered_qty)
    fee = 0 if reason in {r.value for r in FREE_RETURN_REASONS} else return_shipping_fee
    return {
        "items_refund": items_refund,
        "shipping_refund": shipping_refund,
        "return_shipping_fee": fee,
        "refund_amount": max(items_refund + shipping_refund - fee, 0),
    }


class ReturnService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        stock: StockService,
        warehouses: WarehouseService,
        payments: PaymentService,
        carrier: CarrierClient,
        mailer: EmailService,
    ):
        self.db = db
        self.window = timedelta(hours=settings.RETURN_WINDOW_HOURS)
        self.window_hours = settings.RETURN_WINDOW_HOURS
        self.return_shipping_fee = settings.RETURN_SHIPPING_FEE
        self.stock = stock
        self.warehouses = warehouses
        self.payments = payments
        self.carrier = carrier
        self.mailer = mailer

    async def _returned_quantities(self, order_id: str) -> dict:
        """Quantity per order item already claimed by returns still in progress."""
        claimed = {}
        cursor = self.db.returns.find({"order_id": order_id, "status": {"$nin": list(INACTIVE_RETURN_STATUSES)}})
        async for doc in cursor:
            for item in doc["items"]:
                claimed[item["item_id"]] = claimed.get(item["item_id"], 0) + item["quantity"]
        return claimed

    async def eligibility(self, user: dict, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        if order["user_id"] != user["id"]:
            raise ForbiddenException("Not authorized to return this order")

        result = {"eligible": False, "reason": None, "return_window_hours": self.window_hours,
                  "delivered_at": order.get("delivered_at"), "hours_remaining": None, "items": []}

        if order["status"] != "delivered":
            result["reason"] = "Order must be delivered before initiating a return"
            return result
        if not order.get("delivered_at"):
            result["reason"] = "Delivery date not available"
            return result

        elapsed = utcnow() - order["delivered_at"]
        if elapsed > self.window:
            result["reason"] = f"Return window has expired. Returns must be initiated within {self.window_hours} hours of delivery."
            result["hours_remaining"] = 0
            return result

        claimed = await self._returned_quantities(order_id)
        items = [
            {
                "item_id": item["item_id"],
                "name": item["name"],
                "ordered_quantity": item["quantity"],
                "returnable_quantity": item["quantity"] - claimed.get(item["item_id"], 0),
                "unit_price": item["unit_price"],
            }
            for item in order["items"]
        ]
        result["items"] = items
        result["hours_remaining"] = round((self.window - elapsed).total_seconds() / 3600, 1)
        if not any(item["returnable_quantity"] > 0 for item in items):
            result["reason"] = "A return request is already in progress for every item of this order"
            return result
        result["eligible"] = True
        return result

    async def create(self, user: dict, data: ReturnCreate) -> dict:
        check = await self.eligibility(user, data.order_id)
        if not check["eligible"]:
            raise BusinessRuleException(check["reason"])

        order = await self.db.orders.find_one({"_id": str_to_oid(data.order_id)})
        if data.refund_method == RefundMethod.ORIGINAL_PAYMENT:
            if order["payment_method"] == "cod":
                raise ValidationException("Cash on delivery orders are refunded by bank transfer")
            await self.payments.ensure_refundable(order)

        order_items = {item["item_id"]: item for item in order["items"]}
        returnable = {item["item_id"]: item["returnable_quantity"] for item in check["items"]}
        items = []
        for requested in data.items:
            item = order_items.get(requested.item_id)
            if not item:
                raise ValidationException("Invalid order item in return request")
            if requested.quantity > returnable[requested.item_id]:
                raise BusinessRuleException(f"Only {returnable[requested.item_id]} of {item['name']} can be returned")
            items.append(ReturnItemDB(
                item_id=item["item_id"],
                product_id=item["product_id"],
                variant_id=item.get("variant_id"),
                name=item["name"],
                sku=item["sku"],
                quantity=requested.quantity,
                unit_price=item["unit_price"],
            ).model_dump())

        refund = compute_refund(order, items, data.reason.value, self.return_shipping_fee)
        return_doc = ReturnDB(
            return_number=generate_return_number(),
            user_id=user["id"],
            order_id=data.order_id,
            order_number=order["order_number"],
            items=items,
            reason=data.reason,
            reason_details=data.reason_details,
            image_urls=data.image_urls,
            refund_method=data.refund_method,
            bank_details=data.bank_details.model_dump() if data.bank_details else None,
            **refund,
        )
        doc = return_doc.model_dump(by_alias=True, exclude={"id"})
        result = await self.db.returns.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info(
            f"Return {doc['return_number']} requested for {order['order_number']}",
            extra={"order_id": data.order_id, "return_number": doc["return_number"], "user_id": user["id"]},
        )
        return serialize_doc(doc)

    async def _load(self, return_id: str) -> dict:
        doc = await self.db.returns.find_one({"_id": str_to_oid(return_id)})
        if not doc:
            raise NotFoundException("Return request not found")
        return serialize_doc(doc)

    async def get(self, user: dict, return_id: str) -> dict:
        doc = await self._load(return_id)
        if doc["user_id"] != user["id"]:
            raise ForbiddenException("Not authorized to view this return")
        return doc

    async def list_for_user(self, user_id: str, skip: int = 0, limit: int = 20) -> List[dict]:
        cursor = self.db.returns.find({"user_id": user_id}).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def list_all(self, status: Optional[ReturnStatus] = None, skip: int = 0, limit: int = 20) -> List[dict]:
        query = {"status": status.value} if status else {}
        cursor = self.db.returns.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    # --- Admin workflow ---

    async def update_status(self, admin: dict, return_id: str, data: ReturnStatusUpdate) -> dict:
        doc = await self._load(return_id)
        current = ReturnStatus(doc["status"])
        target = data.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise BusinessRuleException(f"Cannot move return from {current.value} to {target.value}")

        changes = {"status": target.value, "updated_at": utcnow()}
        notes = [data.admin_notes] if data.admin_notes else []
        if target == ReturnStatus.REJECTED:
            changes["rejection_reason"] = data.rejection_reason

        # Claim the transition before any side effect runs
        updated = await self.db.returns.find_one_and_update(
            {"_id": doc["_id"], "status": current.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleException("Return status changed, please refresh and try again")

        order = await self.db.orders.find_one({"_id": str_to_oid(doc["order_id"])})
        if target == ReturnStatus.APPROVED:
            shipment = await self._book_return_pickup(doc, order)
            if shipment:
                await self.db.returns.update_one({"_id": doc["_id"]}, {"$set": {"return_shipment": shipment}})
            else:
                notes.append("Courier return order failed, needs manual handling")
        elif target == ReturnStatus.RECEIVED:
            await self.stock.release(
                doc["items"], order["warehouse_id"],
                doc["return_number"], reason=AdjustmentReason.RETURN_RECEIVED, notes=f"Return {doc['return_number']}",
            )
        elif target == ReturnStatus.REFUND_INITIATED:
            await self._refund(doc, order, current)

        if notes:
            await self.db.returns.update_one({"_id": doc["_id"]}, {"$set": {"admin_notes": "\n".join(notes)}})

        logger.info(
            f"Return {doc['return_number']} moved {current.value} -> {target.value}",
            extra={"order_id": doc["order_id"], "return_number": doc["return_number"], "user_id": admin["id"]},
        )
        updated = await self._load(return_id)
        owner = await self.db.users.find_one({"_id": str_to_oid(doc["user_id"])})
        if owner:
            await self.mailer.send_return_update(owner["email"], updated)
        return updated

    async def _refund(self, doc: dict, order: dict, previous: ReturnStatus):
        if doc["refund_method"] != RefundMethod.ORIGINAL_PAYMENT.value:
            return
        try:
            refunded = await self.payments.refund(order, doc["refund_amount"], notes=f"Return {doc['return_number']}")
        except Exception:
            await self.db.returns.update_one({"_id": doc["_id"]}, {"$set": {"status": previous.value}})
            raise
        logger.info(f"Refunded Rs. {from_paise(refunded)} for return {doc['return_number']}")

    async def _book_return_pickup(self, doc: dict, order: dict) -> Optional[dict]:
        try:
            warehouse = await self.warehouses.get(order["warehouse_id"])
        except NotFoundException:
            logger.warning(f"Return pickup for {doc['return_number']} not booked: warehouse is gone")
            return None
        address = order["shipping_address"]
        owner = await self.db.users.find_one({"_id": str_to_oid(doc["user_id"])})
        payload = {
            "order_id": doc["return_number"],
            "order_date": f"{utcnow():%Y-%m-%d}",
            "pickup_customer_name": address["full_name"],
            "pickup_address": address["line1"],
            "pickup_city": address["city"],
            "pickup_state": address["state"],
            "pickup_country": address.get("country", "India"),
            "pickup_pincode": address["pincode"],
            "pickup_email": owner["email"] if owner else "",
            "pickup_phone": address["phone"],
            "shipping_customer_name": warehouse["contact_person"],
            "shipping_address": warehouse["address_line1"],
            "shipping_city": warehouse["city"],
            "shipping_state": warehouse["state"],
            "shipping_country": warehouse.get("country", "India"),
            "shipping_pincode": warehouse["pincode"],
            "shipping_phone": warehouse["phone"],
            "order_items": [
                {"name": i["name"], "sku": i["sku"], "units": i["quantity"],
                 "selling_price": float(from_paise(i["unit_price"]))}
                for i in doc["items"]
            ],
            "payment_method": "Prepaid",
            "sub_total": float(from_paise(doc["items_refund"])),
            **{k: order["shipping_info"]["package"][k] for k in ("length", "breadth", "height")},
            "weight": order["shipping_info"]["package"]["chargeable_weight"],
        }
        try:
            created = await self.carrier.create_return_order(payload)
        except CarrierError as e:
            logger.warning(f"Return pickup for {doc['return_number']} not booked: {e.detail}")
            return None
        return {"carrier_order_id": created["order_id"], "carrier_shipment_id": created["shipment_id"], "created_at": utcnow()}
