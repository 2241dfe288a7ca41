import json
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.coupons.service import CouponService
from storefront.inventory.service import StockService
from storefront.notifications.email import EmailService
from storefront.orders.holds import release_holds
from storefront.payments.gateway import PaymentGateway, GatewayError
from storefront.payments.models import PaymentDB, PaymentMethod, PaymentStatus
from storefront.shared.utils import (
    utcnow, str_to_oid, serialize_doc,
    AppException, ValidationException, NotFoundException, ForbiddenException, BusinessRuleException,
)

logger = logging.getLogger("storefront.payments")

SUCCESS_EVENTS = {"payment.authorized", "payment.captured"}
FAILURE_EVENTS = {"payment.failed"}
REFUND_EVENTS = {"refund.created", "refund.processed"}


class PaymentService:
    """
    Payment rows and their reconciliation with the gateway.

    Every status change is a single guarded update (``pending`` or ``failed``
    to ``success``, ``pending`` to ``failed`` and so on), and side effects such
    as moving the order, releasing holds or mailing the customer only run for
    the caller whose update actually modified the row. That makes callback
    and webhook delivery safe to repeat in any order.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        gateway: PaymentGateway,
        stock: StockService,
        coupons: CouponService,
        mailer: EmailService,
    ):
        self.db = db
        self.gateway = gateway
        self.stock = stock
        self.coupons = coupons
        self.mailer = mailer

    # --- Initiation ---

    async def open_session(self, order_number: str, amount: int) -> dict:
        """Open the remote payment order; its receipt is our order number."""
        return await self.gateway.create_order(amount, order_number, notes={"order_number": order_number})

    async def record(self, order: dict, gateway_order_id: Optional[str] = None, session=None) -> dict:
        payment = PaymentDB(
            order_id=str(order["_id"]),
            user_id=order["user_id"],
            method=order["payment_method"],
            instrument="cod" if order["payment_method"] == PaymentMethod.COD.value else None,
            amount=order["total"],
            gateway_order_id=gateway_order_id,
        )
        doc = payment.model_dump(by_alias=True, exclude={"id"})
        result = await self.db.payments.insert_one(doc, session=session)
        doc["_id"] = result.inserted_id
        return serialize_doc(doc)

    def checkout_session(self, payment: dict, order: dict) -> Optional[dict]:
        if not payment.get("gateway_order_id"):
            return None
        return {
            "key_id": self.gateway.key_id,
            "gateway_order_id": payment["gateway_order_id"],
            "amount": payment["amount"],
            "currency": payment.get("currency", "INR"),
            "receipt": order["order_number"],
        }

    async def get_for_order(self, order_id: str) -> Optional[dict]:
        payment = await self.db.payments.find_one({"order_id": order_id})
        return serialize_doc(payment) if payment else None

    # --- Verification ---

    async def verify_callback(self, user: dict, gateway_order_id: str, gateway_payment_id: str, signature: str) -> dict:
        """Checkout callback from the browser. Returns the updated order."""
        if not self.gateway.verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(f"Invalid payment signature for {gateway_order_id}", extra={"user_id": user["id"]})
            raise ValidationException("Invalid signature")

        payment = await self.db.payments.find_one({"gateway_order_id": gateway_order_id})
        if not payment:
            raise NotFoundException("Payment not found")
        if payment["user_id"] != user["id"]:
            raise ForbiddenException("Not authorized to verify this payment")

        instrument = None
        try:
            remote = await self.gateway.fetch_payment(gateway_payment_id)
        except GatewayError as e:
            # The signature already proves the payment; the webhook settles the rest
            logger.warning(f"Could not confirm {gateway_payment_id} with the gateway: {e.detail}")
        else:
            if remote.get("order_id") not in (None, gateway_order_id):
                raise ValidationException("Payment does not belong to this order")
            if remote.get("status") == "failed":
                await self._apply_failure(payment, gateway_payment_id, remote.get("error_description") or "Payment failed")
                raise BusinessRuleException("Payment was not completed")
            instrument = remote.get("method")

        await self._apply_success(payment, gateway_payment_id, instrument)
        order = await self.db.orders.find_one({"_id": str_to_oid(payment["order_id"])})
        return serialize_doc(order)

    async def handle_webhook(self, body: bytes, signature: Optional[str]) -> dict:
        """
        Apply one gateway event.

        Only a bad signature or an unreadable body is an error for the
        caller. Business failures while applying a verified event are logged
        and acknowledged, since the gateway redelivering it would not help.
        """
        if not self.gateway.verify_webhook_signature(body, signature):
            logger.warning("Rejected webhook with invalid signature", extra={"event": "webhook"})
            raise ValidationException("Invalid signature")

        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationException("Malformed webhook payload")
        if not isinstance(event, dict):
            raise ValidationException("Malformed webhook payload")

        name = event.get("event")
        try:
            return await self._dispatch(name, event.get("payload") or {})
        except AppException as e:
            logger.error(f"Webhook {name} could not be applied: {e.detail}", extra={"event": name})
            return {"event": name, "handled": False}

    async def _dispatch(self, name: Optional[str], payload: dict) -> dict:
        if name in REFUND_EVENTS:
            refund = (payload.get("refund") or {}).get("entity") or {}
            payment = await self.db.payments.find_one({"gateway_payment_id": refund.get("payment_id")})
            if not payment:
                return self._unknown(name, refund.get("payment_id"))
            # Refund events carry the payment too; its amount_refunded covers earlier partial refunds
            paid = (payload.get("payment") or {}).get("entity") or {}
            await self._apply_refunded(payment, refund.get("id"), paid.get("amount_refunded") or refund.get("amount"))
            return {"event": name, "handled": True}

        entity = (payload.get("payment") or {}).get("entity") or {}
        if name not in SUCCESS_EVENTS and name not in FAILURE_EVENTS:
            logger.info(f"Ignoring webhook event {name}", extra={"event": name})
            return {"event": name, "handled": False}

        payment = await self.db.payments.find_one({"gateway_order_id": entity.get("order_id")})
        if not payment:
            return self._unknown(name, entity.get("order_id"))

        if name in SUCCESS_EVENTS:
            await self._apply_success(payment, entity.get("id"), entity.get("method"))
        else:
            await self._apply_failure(payment, entity.get("id"), entity.get("error_description") or "Payment failed")
        return {"event": name, "handled": True}

    @staticmethod
    def _unknown(name: str, reference: Optional[str]) -> dict:
        logger.warning(f"Webhook {name} for unknown payment {reference}", extra={"event": name})
        return {"event": name, "handled": False}

    # --- Transitions ---

    async def _apply_success(self, payment: dict, gateway_payment_id: Optional[str], instrument: Optional[str] = None):
        now = utcnow()
        changes = {
            "status": PaymentStatus.SUCCESS.value,
            "gateway_payment_id": gateway_payment_id,
            "paid_at": now,
            "updated_at": now,
        }
        if instrument:
            changes["instrument"] = instrument
        # A failed attempt can be followed by a successful retry on the same gateway order
        result = await self.db.payments.update_one(
            {"_id": payment["_id"], "status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]}},
            {"$set": changes, "$unset": {"failure_reason": ""}},
        )
        if not result.modified_count:
            return

        order = await self.db.orders.find_one_and_update(
            {"_id": str_to_oid(payment["order_id"]), "status": "pending"},
            {"$set": {"status": "processing", "paid_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if order:
            logger.info(
                f"Payment captured for {order['order_number']}",
                extra={"order_id": payment["order_id"], "order_number": order["order_number"]},
            )
            user = await self.db.users.find_one({"_id": str_to_oid(order["user_id"])})
            if user:
                await self.mailer.send_order_confirmation(user["email"], order)
            return

        # The order was cancelled (by the customer or an earlier failed attempt)
        # while the gateway was still settling
        order = await self.db.orders.find_one({"_id": str_to_oid(payment["order_id"])})
        if order and order["status"] == "cancelled":
            logger.warning(
                f"Payment captured for cancelled order {order['order_number']}, refunding",
                extra={"order_id": payment["order_id"]},
            )
            await self.refund(order, payment["amount"], notes="Order cancelled before payment settled")

    async def _apply_failure(self, payment: dict, gateway_payment_id: Optional[str], reason: str):
        now = utcnow()
        result = await self.db.payments.update_one(
            {"_id": payment["_id"], "status": PaymentStatus.PENDING.value},
            {"$set": {
                "status": PaymentStatus.FAILED.value,
                "gateway_payment_id": gateway_payment_id,
                "failure_reason": reason,
                "updated_at": now,
            }},
        )
        if not result.modified_count:
            return

        order = await self.db.orders.find_one_and_update(
            {"_id": str_to_oid(payment["order_id"]), "status": "pending"},
            {"$set": {"status": "cancelled", "cancellation_reason": f"Payment failed: {reason}",
                      "cancelled_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if order:
            await release_holds(self.stock, self.coupons, order, notes="Payment failed")
            logger.info(f"Order {order['order_number']} cancelled after failed payment", extra={"order_id": payment["order_id"]})

    async def _apply_refunded(self, payment: dict, refund_id: Optional[str], refunded_total: Optional[int]):
        """Record a gateway refund; ``refunded_total`` is the payment's cumulative refunded amount."""
        refunded = min(refunded_total or payment["amount"], payment["amount"])
        await self.db.payments.update_one(
            {"_id": payment["_id"], "status": {"$in": [PaymentStatus.SUCCESS.value, PaymentStatus.REFUNDED.value]}},
            {
                "$set": {"status": PaymentStatus.REFUNDED.value, "gateway_refund_id": refund_id, "updated_at": utcnow()},
                # Refunds started here already counted their amount when they were claimed
                "$max": {"refund_amount": refunded},
            },
        )

    # --- Refunds and collection ---

    async def refund(self, order: dict, amount: int, notes: str = "") -> int:
        """
        Refund up to ``amount`` of the order's captured payment.

        The amount is claimed on the payment row first, guarded on the
        refund_amount that was read, and given back if the gateway call
        fails. Returns the refunded amount, 0 when nothing was captured or a
        concurrent refund won the claim.
        """
        order_id = str(order["_id"])
        payment = await self.db.payments.find_one({"order_id": order_id})
        if not payment:
            return 0

        if payment["method"] == PaymentMethod.COD.value:
            if payment["status"] == PaymentStatus.PENDING.value:
                await self.db.payments.update_one(
                    {"_id": payment["_id"], "status": PaymentStatus.PENDING.value},
                    {"$set": {"status": PaymentStatus.FAILED.value, "failure_reason": notes or "Order cancelled",
                              "updated_at": utcnow()}},
                )
            return 0

        refundable = (PaymentStatus.SUCCESS.value, PaymentStatus.REFUNDED.value)
        if payment["status"] not in refundable:
            return 0
        already = payment.get("refund_amount", 0)
        amount = min(amount, payment["amount"] - already)
        if amount <= 0:
            return 0
        claimed = await self.db.payments.update_one(
            {"_id": payment["_id"], "status": {"$in": list(refundable)}, "refund_amount": already},
            {"$inc": {"refund_amount": amount},
             "$set": {"status": PaymentStatus.REFUNDED.value, "updated_at": utcnow()}},
        )
        if not claimed.modified_count:
            return 0

        try:
            result = await self.gateway.refund(payment["gateway_payment_id"], amount, notes={"reason": notes})
        except GatewayError:
            await self.db.payments.update_one(
                {"_id": payment["_id"]},
                {"$inc": {"refund_amount": -amount},
                 "$set": {"status": payment["status"], "updated_at": utcnow()}},
            )
            raise

        await self.db.payments.update_one({"_id": payment["_id"]}, {"$set": {"gateway_refund_id": result.get("id")}})
        logger.info(f"Refunded {amount} paise for {order['order_number']}", extra={"order_id": order_id})
        return amount

    async def mark_cod_collected(self, order_id: str):
        now = utcnow()
        await self.db.payments.update_one(
            {"order_id": order_id, "method": PaymentMethod.COD.value, "status": PaymentStatus.PENDING.value},
            {"$set": {"status": PaymentStatus.SUCCESS.value, "paid_at": now, "updated_at": now}},
        )

    async def ensure_refundable(self, order: dict):
        payment = await self.db.payments.find_one({"order_id": str(order["_id"])})
        if not payment or payment["status"] not in (PaymentStatus.SUCCESS.value, PaymentStatus.REFUNDED.value):
            raise BusinessRuleException("Order has no captured payment to refund")
        return serialize_doc(payment)
