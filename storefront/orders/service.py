import logging
import secrets
import string
from datetime import timedelta
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.addresses.service import AddressService
from storefront.catalog.service import ProductService
from storefront.coupons.service import CouponService, CouponError
from storefront.inventory.service import WarehouseService, StockService, InsufficientStockError
from storefront.notifications.email import EmailService
from storefront.orders.holds import release_holds
from storefront.orders.models import OrderDB, OrderItemDB, OrderCouponDB, OrderStatus, ALLOWED_TRANSITIONS
from storefront.orders.schemas import OrderCreate, OrderStatusUpdate
from storefront.payments.gateway import GatewayError
from storefront.payments.models import PaymentMethod
from storefront.payments.service import PaymentService
from storefront.shared.money import apply_rate, from_paise
from storefront.shared.utils import (
    Settings, utcnow, str_to_oid, serialize_doc,
    BusinessRuleException, ConflictException, NotFoundException, ForbiddenException, ValidationException,
)
from storefront.shipping.calculator import ShippingCalculator
from storefront.shipping.carrier import CarrierClient, CarrierError
from storefront.shipping.scheduler import unclaimed
from storefront.shopping.service import CartService

logger = logging.getLogger("storefront.orders")

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{utcnow():%Y%m%d}-{suffix}"


class OrderService:
    """
    Checkout and the order lifecycle.

    ``create`` takes its holds in a fixed order (stock, then coupon, then the
    order row) and undoes the earlier ones when a later step fails, so an
    order never exists without its stock and coupon use, and neither is
    consumed without an order.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        products: ProductService,
        addresses: AddressService,
        carts: CartService,
        coupons: CouponService,
        warehouses: WarehouseService,
        stock: StockService,
        calculator: ShippingCalculator,
        payments: PaymentService,
        carrier: CarrierClient,
        mailer: EmailService,
    ):
        self.db = db
        self.gst_rate_bps = settings.GST_RATE_BPS
        self.cod_limit = settings.COD_LIMIT
        self.cancellation_window = timedelta(hours=settings.ORDER_CANCELLATION_WINDOW_HOURS)
        self.shipping_claim_timeout = timedelta(seconds=settings.SHIPMENT_CLAIM_TIMEOUT_SECONDS)
        self.transactions = settings.MONGO_TRANSACTIONS
        self.products = products
        self.addresses = addresses
        self.carts = carts
        self.coupons = coupons
        self.warehouses = warehouses
        self.stock = stock
        self.calculator = calculator
        self.payments = payments
        self.carrier = carrier
        self.mailer = mailer

    # --- Pricing ---

    async def _resolve_lines(self, user_id: str, data: OrderCreate):
        if data.items:
            requested = [line.model_dump() for line in data.items]
            from_cart = False
        else:
            requested = await self.carts.get_lines(user_id)
            from_cart = True
        if not requested:
            raise ValidationException("Your cart is empty")

        items, package_lines = [], []
        for line in requested:
            resolved = await self.products.resolve_item(line["product_id"], line.get("variant_id"))
            items.append(OrderItemDB(
                item_id=str(ObjectId()),
                product_id=resolved["product_id"],
                variant_id=resolved["variant_id"],
                name=resolved["name"],
                sku=resolved["sku"],
                hsn_code=resolved.get("hsn_code"),
                quantity=line["quantity"],
                unit_price=resolved["unit_price"],
                line_total=resolved["unit_price"] * line["quantity"],
            ).model_dump())
            package_lines.append({**resolved, "quantity": line["quantity"]})
        return items, package_lines, from_cart

    async def _check_stock(self, items: List[dict], warehouse_id: str):
        for item in items:
            available = await self.stock.available(item["product_id"], item.get("variant_id"), warehouse_id)
            if available < item["quantity"]:
                raise InsufficientStockError(f"Insufficient stock for {item['name']}")

    async def _price(self, user: dict, data: OrderCreate, strict: bool) -> dict:
        """
        Full price breakdown for a checkout request.

        With ``strict`` every problem raises; otherwise a coupon problem is
        reported in ``coupon_error`` and the coupon is left out.
        """
        items, package_lines, from_cart = await self._resolve_lines(user["id"], data)
        subtotal = sum(item["line_total"] for item in items)

        shipping_address = await self.addresses.snapshot(user["id"], data.shipping_address_id)
        billing_address = (
            await self.addresses.snapshot(user["id"], data.billing_address_id)
            if data.billing_address_id else shipping_address
        )

        coupon, discount, coupon_error = None, 0, None
        if data.coupon_code:
            try:
                coupon, discount = await self.coupons.validate(data.coupon_code, subtotal, user["id"])
            except CouponError as e:
                if strict:
                    raise
                coupon_error = e.detail

        warehouse = await self.warehouses.get_pickup_warehouse()
        warehouse_id = str(warehouse["_id"])
        await self._check_stock(items, warehouse_id)

        quote = await self.calculator.quote(
            warehouse["pincode"],
            shipping_address["pincode"],
            package_lines,
            subtotal,
            cod=data.payment_method == PaymentMethod.COD,
            courier_id=data.courier_id,
            preference=data.courier_preference,
        )
        if strict and not quote["serviceable"]:
            raise BusinessRuleException(f"Delivery is not available to pincode {shipping_address['pincode']}")

        shipping_cost = quote["shipping_cost"]
        tax_amount = apply_rate(max(subtotal - discount + shipping_cost, 0), self.gst_rate_bps)
        total = max(subtotal - discount + shipping_cost + tax_amount, 0)

        return {
            "items": items,
            "from_cart": from_cart,
            "subtotal": subtotal,
            "discount": discount,
            "shipping_cost": shipping_cost,
            "tax_amount": tax_amount,
            "total": total,
            "coupon": coupon,
            "coupon_error": coupon_error,
            "shipping_address": shipping_address,
            "billing_address": billing_address,
            "warehouse": warehouse,
            "quote": quote,
        }

    async def preview(self, user: dict, data: OrderCreate) -> dict:
        breakdown = await self._price(user, data, strict=False)
        quote = breakdown["quote"]
        return {
            "items": breakdown["items"],
            "subtotal": breakdown["subtotal"],
            "discount": breakdown["discount"],
            "shipping_cost": breakdown["shipping_cost"],
            "tax_amount": breakdown["tax_amount"],
            "total": breakdown["total"],
            "coupon_code": breakdown["coupon"]["code"] if breakdown["coupon"] else None,
            "coupon_error": breakdown["coupon_error"],
            "is_free_shipping": quote["is_free_shipping"],
            "serviceable": quote["serviceable"],
            "cod_available": breakdown["total"] <= self.cod_limit,
            "courier": quote["courier"],
            "couriers": quote["options"],
        }

    # --- Checkout ---

    async def create(self, user: dict, data: OrderCreate) -> dict:
        breakdown = await self._price(user, data, strict=True)
        total = breakdown["total"]
        is_cod = data.payment_method == PaymentMethod.COD
        if is_cod and total > self.cod_limit:
            raise BusinessRuleException(
                f"Cash on delivery is only available for orders up to Rs. {from_paise(self.cod_limit)}"
            )

        order_id = ObjectId()
        order_number = generate_order_number()
        warehouse = breakdown["warehouse"]
        warehouse_id = str(warehouse["_id"])
        coupon = breakdown["coupon"]
        quote = breakdown["quote"]
        order = OrderDB(
            order_number=order_number,
            user_id=user["id"],
            status=OrderStatus.PROCESSING if is_cod else OrderStatus.PENDING,
            items=breakdown["items"],
            subtotal=breakdown["subtotal"],
            discount=breakdown["discount"],
            shipping_cost=breakdown["shipping_cost"],
            tax_amount=breakdown["tax_amount"],
            total=total,
            payment_method=data.payment_method.value,
            shipping_address=breakdown["shipping_address"],
            billing_address=breakdown["billing_address"],
            coupon=OrderCouponDB(id=coupon["id"], code=coupon["code"], discount=breakdown["discount"]) if coupon else None,
            warehouse_id=warehouse_id,
            shipping_info={
                "warehouse": {
                    "id": warehouse_id,
                    "name": warehouse["name"],
                    "code": warehouse["code"],
                    "pincode": warehouse["pincode"],
                },
                "package": quote["package"],
                "courier": quote["courier"],
                "is_free_shipping": quote["is_free_shipping"],
            },
            notes=data.notes,
            created_at=utcnow(),
        )
        doc = order.model_dump(by_alias=True, exclude={"id"})
        doc["_id"] = order_id

        # Nothing is held yet, so a gateway failure needs no compensation
        gateway_order_id = None
        if not is_cod:
            gateway_session = await self.payments.open_session(order_number, total)
            gateway_order_id = gateway_session["id"]

        if self.transactions:
            async with await self._start_session() as session:
                payment = await session.with_transaction(
                    lambda s: self._persist(user, doc, breakdown["items"], coupon, gateway_order_id, session=s)
                )
        else:
            payment = await self._persist_compensating(user, doc, breakdown["items"], coupon, gateway_order_id)

        if breakdown["from_cart"]:
            await self.carts.clear(user["id"])

        logger.info(
            f"Order {order_number} placed for {total} paise",
            extra={"order_id": str(order_id), "order_number": order_number, "user_id": user["id"]},
        )
        if is_cod:
            await self.mailer.send_order_confirmation(user["email"], doc)

        order_doc = serialize_doc(doc)
        return {
            "order": order_doc,
            "payment": payment,
            "checkout": self.payments.checkout_session(payment, order_doc),
        }

    async def _start_session(self):
        return await self.db.client.start_session()

    async def _persist(self, user: dict, doc: dict, items: list, coupon: Optional[dict],
                       gateway_order_id: Optional[str], session=None) -> dict:
        """Hold stock, redeem the coupon and write the order with its payment, all in one transaction."""
        order_id = str(doc["_id"])
        await self.stock.reserve(items, doc["warehouse_id"], order_id, actor_id=user["id"], session=session)
        if coupon:
            await self.coupons.redeem(coupon, user["id"], session=session)
        await self.db.orders.insert_one(doc, session=session)
        return await self.payments.record(doc, gateway_order_id, session=session)

    async def _persist_compensating(self, user: dict, doc: dict, items: list, coupon: Optional[dict],
                                    gateway_order_id: Optional[str]) -> dict:
        # Without transactions each step undoes the ones before it on failure
        order_id = str(doc["_id"])
        warehouse_id = doc["warehouse_id"]
        await self.stock.reserve(items, warehouse_id, order_id, actor_id=user["id"])

        if coupon:
            try:
                await self.coupons.redeem(coupon, user["id"])
            except Exception:
                await self.stock.release(items, warehouse_id, order_id, notes="Checkout rolled back")
                raise

        try:
            await self.db.orders.insert_one(doc)
        except Exception:
            await self.stock.release(items, warehouse_id, order_id, notes="Checkout rolled back")
            if coupon:
                await self.coupons.release(coupon["id"], user["id"])
            raise

        try:
            return await self.payments.record(doc, gateway_order_id)
        except Exception:
            await self._abandon(doc, "Payment could not be recorded")
            raise

    async def _abandon(self, order: dict, reason: str):
        now = utcnow()
        cancelled = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": {"$in": [OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]}},
            {"$set": {"status": OrderStatus.CANCELLED.value, "cancellation_reason": reason,
                      "cancelled_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if cancelled:
            await release_holds(self.stock, self.coupons, cancelled, notes=reason)

    async def verify_payment(self, user: dict, gateway_order_id: str, gateway_payment_id: str, signature: str) -> dict:
        order = await self.payments.verify_callback(user, gateway_order_id, gateway_payment_id, signature)
        return {"order": order, "payment": await self.payments.get_for_order(order["id"])}

    # --- Reads ---

    async def _load(self, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        return serialize_doc(order)

    async def get(self, user: dict, order_id: str) -> dict:
        order = await self._load(order_id)
        if order["user_id"] != user["id"]:
            raise ForbiddenException("Not authorized to view this order")
        return order

    async def list_for_user(self, user_id: str, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20) -> List[dict]:
        query = {"user_id": user_id}
        if status:
            query["status"] = status.value
        cursor = self.db.orders.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def list_all(
        self,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
        order_number: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> List[dict]:
        query = {}
        if status:
            query["status"] = status.value
        if user_id:
            query["user_id"] = user_id
        if order_number:
            query["order_number"] = order_number.strip().upper()
        cursor = self.db.orders.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def tracking(self, user: dict, order_id: str) -> dict:
        order = await self.get(user, order_id)
        result = {
            "order_number": order["order_number"],
            "status": order["status"],
            "tracking_number": order.get("tracking_number"),
            "courier_name": order.get("courier_name"),
            "shipped_at": order.get("shipped_at"),
            "delivered_at": order.get("delivered_at"),
            "tracking": None,
        }
        if order.get("tracking_number"):
            try:
                result["tracking"] = await self.carrier.track(order["tracking_number"])
            except CarrierError as e:
                logger.warning(f"Live tracking unavailable for {order['order_number']}: {e.detail}")
        return result

    # --- Cancellation ---

    async def can_cancel(self, order: dict, enforce_window: bool = True) -> dict:
        status = order["status"]
        if status == OrderStatus.CANCELLED.value:
            return {"can_cancel": False, "reason": "Order is already cancelled"}
        if status in (OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value):
            return {"can_cancel": False, "reason": "Delivered orders cannot be cancelled, request a return instead"}
        if status == OrderStatus.SHIPPED.value or order.get("tracking_number"):
            return {"can_cancel": False, "reason": "Order has already been shipped"}
        if enforce_window and status == OrderStatus.PROCESSING.value:
            if utcnow() - order["created_at"] > self.cancellation_window:
                return {"can_cancel": False, "reason": "Cancellation window has passed"}

        shipment = await self.db.shipments.find_one({"order_id": str(order["_id"])})
        if shipment and shipment.get("awb_code"):
            return {"can_cancel": False, "reason": "A waybill has already been generated for this order"}
        return {"can_cancel": True, "reason": None}

    async def check_cancellable(self, user: dict, order_id: str) -> dict:
        return await self.can_cancel(await self.get(user, order_id))

    async def cancel(self, user: dict, order_id: str, reason: str) -> dict:
        order = await self.get(user, order_id)
        return await self._cancel(order, reason, enforce_window=True)

    async def _cancel(self, order: dict, reason: str, enforce_window: bool) -> dict:
        check = await self.can_cancel(order, enforce_window)
        if not check["can_cancel"]:
            raise BusinessRuleException(check["reason"])

        now = utcnow()
        cancelled = await self.db.orders.find_one_and_update(
            {
                "_id": order["_id"],
                "status": {"$in": [OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]},
                "tracking_number": None,
                **unclaimed(now - self.shipping_claim_timeout),
            },
            {"$set": {"status": OrderStatus.CANCELLED.value, "cancellation_reason": reason,
                      "cancelled_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not cancelled:
            current = await self.db.orders.find_one({"_id": order["_id"]})
            if current and current["status"] == OrderStatus.PROCESSING.value and current.get("shipping_claim"):
                raise ConflictException("Order is being handed to the courier, please try again shortly")
            raise BusinessRuleException("Order status changed, please refresh and try again")

        await release_holds(self.stock, self.coupons, cancelled, notes=f"Order cancelled: {reason}")
        await self._cancel_carrier_order(cancelled)

        refund_amount = 0
        try:
            refund_amount = await self.payments.refund(cancelled, cancelled["total"], notes=reason)
        except GatewayError as e:
            logger.error(
                f"Refund for cancelled order {cancelled['order_number']} failed: {e.detail}",
                extra={"order_id": order["id"]},
            )
            await self.db.orders.update_one({"_id": order["_id"]}, {"$set": {"refund_failed": True}})

        logger.info(f"Order {cancelled['order_number']} cancelled", extra={"order_id": order["id"]})
        owner = await self.db.users.find_one({"_id": str_to_oid(cancelled["user_id"])})
        if owner:
            await self.mailer.send_order_cancelled(owner["email"], cancelled, reason, refund_amount)
        return serialize_doc(cancelled)

    async def _cancel_carrier_order(self, order: dict):
        """Withdraw a courier order created before the customer cancelled (no AWB yet)."""
        shipment = await self.db.shipments.find_one({"order_id": str(order["_id"])})
        if not shipment or not shipment.get("carrier_order_id"):
            return
        try:
            await self.carrier.cancel_orders([shipment["carrier_order_id"]])
        except CarrierError as e:
            logger.error(
                f"Courier order {shipment['carrier_order_id']} for {order['order_number']} not cancelled: {e.detail}",
                extra={"order_id": str(order["_id"])},
            )
            await self.db.shipments.update_one({"_id": shipment["_id"]}, {"$set": {"carrier_cancel_failed": True}})
            return
        await self.db.shipments.update_one(
            {"_id": shipment["_id"]},
            {"$set": {"cancelled_at": utcnow(), "updated_at": utcnow()}},
        )

    # --- Admin ---

    async def update_status(self, admin: dict, order_id: str, data: OrderStatusUpdate) -> dict:
        order = await self._load(order_id)
        current = OrderStatus(order["status"])
        target = data.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise BusinessRuleException(f"Cannot change order status from {current.value} to {target.value}")

        if target == OrderStatus.CANCELLED:
            return await self._cancel(order, data.reason or "Cancelled by admin", enforce_window=False)

        now = utcnow()
        changes = {"status": target.value, "updated_at": now}
        if target == OrderStatus.PROCESSING:
            changes["paid_at"] = order.get("paid_at") or now
        elif target == OrderStatus.SHIPPED:
            if not data.tracking_number:
                raise ValidationException("A tracking number is required to mark an order shipped")
            changes.update({
                "tracking_number": data.tracking_number,
                "courier_name": data.courier_name,
                "shipped_at": now,
            })
        elif target == OrderStatus.DELIVERED:
            changes["delivered_at"] = now

        updated = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": current.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleException("Order status changed, please refresh and try again")

        if target == OrderStatus.DELIVERED:
            await self.payments.mark_cod_collected(order_id)
            await self.db.shipments.update_one({"order_id": order_id}, {"$set": {"delivered_at": now}})

        logger.info(
            f"Order {order['order_number']} moved {current.value} -> {target.value}",
            extra={"order_id": order_id, "user_id": admin["id"]},
        )
        return serialize_doc(updated)
