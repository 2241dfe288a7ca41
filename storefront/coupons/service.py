import logging
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from storefront.coupons.models import CouponDB, DiscountType
from storefront.coupons.schemas import CouponCreate, CouponUpdate
from storefront.shared.money import to_paise, apply_rate
from storefront.shared.utils import (
    str_to_oid, serialize_doc, utcnow,
    BusinessRuleException, NotFoundException, ConflictException, ValidationException,
)

logger = logging.getLogger("storefront.coupons")

MONEY_FIELDS = ("discount_value", "min_order_value", "max_discount_amount")


class CouponError(BusinessRuleException):
    pass


def compute_discount(coupon: dict, subtotal: int) -> int:
    if coupon["discount_type"] == DiscountType.FIXED.value:
        discount = coupon["discount_value"]
    else:
        discount = apply_rate(subtotal, coupon["discount_value"])

    if coupon.get("max_discount_amount") is not None:
        discount = min(discount, coupon["max_discount_amount"])
    return max(0, min(discount, subtotal))


class CouponService:
    """
    Coupon validation and redemption.

    ``validate`` only reads. Counters move in ``redeem``/``release``, which
    are called from order creation and cancellation. Both counters are bumped
    with guarded single-document updates so concurrent checkouts can never
    push usage past its cap.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def validate(self, code: str, subtotal: int, user_id: str) -> Tuple[dict, int]:
        coupon = await self.db.coupons.find_one({"code": code.strip().upper()})
        if not coupon or not coupon.get("is_active"):
            raise CouponError("Coupon not found or inactive")

        now = utcnow()
        if now < coupon["valid_from"]:
            raise CouponError("Coupon is not yet active")
        if now > coupon["valid_until"]:
            raise CouponError("Coupon has expired")

        if subtotal < coupon.get("min_order_value", 0):
            raise CouponError("Minimum order value not met")

        if coupon.get("max_usage") is not None and coupon["usage_count"] >= coupon["max_usage"]:
            raise CouponError("Coupon usage limit reached")

        if coupon.get("per_user_limit") is not None:
            used = await self.user_redemptions(str(coupon["_id"]), user_id)
            if used >= coupon["per_user_limit"]:
                raise CouponError("Per-user limit reached")

        return serialize_doc(coupon), compute_discount(coupon, subtotal)

    async def user_redemptions(self, coupon_id: str, user_id: str) -> int:
        redemption = await self.db.coupon_redemptions.find_one({"coupon_id": coupon_id, "user_id": user_id})
        return redemption["count"] if redemption else 0

    async def redeem(self, coupon: dict, user_id: str, session=None):
        """
        Consume one use of ``coupon`` for ``user_id`` or raise ``CouponError``.

        Inside a transaction (``session``) a failure is undone by the abort;
        otherwise the usage increment is given back here.
        """
        coupon_id = coupon["id"]
        max_usage = coupon.get("max_usage")
        guard = {"_id": str_to_oid(coupon_id), "is_active": True, "max_usage": max_usage}
        if max_usage is not None:
            guard["usage_count"] = {"$lt": max_usage}
        claimed = await self.db.coupons.find_one_and_update(
            guard,
            {"$inc": {"usage_count": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if not claimed:
            raise CouponError("Coupon usage limit reached")

        try:
            if session is None:
                await self._claim_user_slot(coupon_id, user_id, coupon.get("per_user_limit"))
            else:
                await self._claim_user_slot_in(session, coupon_id, user_id, coupon.get("per_user_limit"))
        except CouponError:
            if session is None:
                await self._decrement_usage(coupon_id)
            raise
        logger.info(f"Coupon {coupon['code']} redeemed", extra={"user_id": user_id})

    async def _claim_user_slot_in(self, session, coupon_id: str, user_id: str, limit: Optional[int]):
        # A duplicate-key error would abort the transaction, so read the counter first;
        # concurrent claims surface as write conflicts and the transaction is retried
        key = {"coupon_id": coupon_id, "user_id": user_id}
        if limit is not None:
            row = await self.db.coupon_redemptions.find_one(key, session=session)
            if row and row["count"] >= limit:
                raise CouponError("Per-user limit reached")
        await self.db.coupon_redemptions.update_one(key, {"$inc": {"count": 1}}, upsert=True, session=session)

    async def _claim_user_slot(self, coupon_id: str, user_id: str, limit: Optional[int]):
        key = {"coupon_id": coupon_id, "user_id": user_id}
        if limit is None:
            await self.db.coupon_redemptions.update_one(key, {"$inc": {"count": 1}}, upsert=True)
            return

        for _ in range(2):
            result = await self.db.coupon_redemptions.update_one(
                {**key, "count": {"$lt": limit}},
                {"$inc": {"count": 1}},
            )
            if result.modified_count:
                return
            try:
                await self.db.coupon_redemptions.insert_one({**key, "count": 1})
                return
            except DuplicateKeyError:
                # Row exists: either at the limit or a concurrent first redemption won the insert
                continue
        raise CouponError("Per-user limit reached")

    async def release(self, coupon_id: str, user_id: str):
        """Give back one use, e.g. when the order that consumed it is cancelled."""
        await self._decrement_usage(coupon_id)
        await self.db.coupon_redemptions.update_one(
            {"coupon_id": coupon_id, "user_id": user_id, "count": {"$gt": 0}},
            {"$inc": {"count": -1}},
        )

    async def _decrement_usage(self, coupon_id: str):
        await self.db.coupons.update_one(
            {"_id": str_to_oid(coupon_id), "usage_count": {"$gt": 0}},
            {"$inc": {"usage_count": -1}, "$set": {"updated_at": utcnow()}},
        )

    # --- Admin CRUD ---

    async def list(self, active_only: bool = False, skip: int = 0, limit: int = 50) -> List[dict]:
        query = {"is_active": True} if active_only else {}
        cursor = self.db.coupons.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def list_available(self) -> List[dict]:
        """Coupons a shopper can currently apply."""
        now = utcnow()
        cursor = self.db.coupons.find({
            "is_active": True,
            "valid_from": {"$lte": now},
            "valid_until": {"$gte": now},
        }).sort("valid_until", 1)
        coupons = []
        async for doc in cursor:
            if doc.get("max_usage") is not None and doc["usage_count"] >= doc["max_usage"]:
                continue
            coupons.append(serialize_doc(doc))
        return coupons

    async def get(self, coupon_id: str) -> dict:
        coupon = await self.db.coupons.find_one({"_id": str_to_oid(coupon_id)})
        if not coupon:
            raise NotFoundException("Coupon not found")
        return serialize_doc(coupon)

    async def create(self, data: CouponCreate) -> dict:
        values = data.model_dump()
        for field in MONEY_FIELDS:
            if values.get(field) is not None:
                values[field] = to_paise(values[field])
        coupon = CouponDB(**values)
        try:
            result = await self.db.coupons.insert_one(coupon.model_dump(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("Coupon code already exists")
        logger.info(f"Created coupon {coupon.code}")
        return await self.get(str(result.inserted_id))

    async def update(self, coupon_id: str, data: CouponUpdate) -> dict:
        coupon = await self.get(coupon_id)
        changes = data.model_dump(exclude_unset=True)
        for field in MONEY_FIELDS:
            if changes.get(field) is not None:
                changes[field] = to_paise(changes[field])
        if "discount_type" in changes:
            changes["discount_type"] = DiscountType(changes["discount_type"]).value

        merged = {**coupon, **changes}
        if merged["valid_until"] <= merged["valid_from"]:
            raise ValidationException("valid_until must be after valid_from")
        if merged["discount_type"] == DiscountType.PERCENTAGE.value and merged["discount_value"] > 10000:
            raise ValidationException("Percentage discount cannot exceed 100")
        if merged.get("max_usage") is not None and merged["max_usage"] < merged["usage_count"]:
            raise ValidationException("max_usage cannot be lower than the current usage")

        if changes:
            changes["updated_at"] = utcnow()
            await self.db.coupons.update_one({"_id": coupon["_id"]}, {"$set": changes})
        return await self.get(coupon_id)

    async def delete(self, coupon_id: str):
        coupon = await self.get(coupon_id)
        # Orders keep a snapshot of the coupon, so removal never breaks history
        await self.db.coupons.delete_one({"_id": coupon["_id"]})
        await self.db.coupon_redemptions.delete_many({"coupon_id": coupon_id})
