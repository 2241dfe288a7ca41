import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from storefront.inventory.models import (
    WarehouseDB, StockAdjustmentDB, AdjustmentReason, DEFAULT_LOW_STOCK_THRESHOLD,
)
from storefront.inventory.schemas import WarehouseCreate, WarehouseUpdate
from storefront.shared.utils import (
    str_to_oid, serialize_doc, utcnow,
    NotFoundException, ConflictException, BusinessRuleException,
)

logger = logging.getLogger("storefront.inventory")


class InsufficientStockError(BusinessRuleException):
    def __init__(self, detail: str = "Insufficient stock"):
        super().__init__(detail)


class WarehouseService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list(self, include_inactive: bool = True) -> List[dict]:
        query = {} if include_inactive else {"is_active": True}
        cursor = self.db.warehouses.find(query).sort("name", 1)
        return [serialize_doc(doc) async for doc in cursor]

    async def get(self, warehouse_id: str) -> dict:
        warehouse = await self.db.warehouses.find_one({"_id": str_to_oid(warehouse_id)})
        if not warehouse:
            raise NotFoundException("Warehouse not found")
        return serialize_doc(warehouse)

    async def create(self, data: WarehouseCreate) -> dict:
        warehouse = WarehouseDB(**data.model_dump())
        if warehouse.is_default_pickup:
            await self._clear_default_pickup()
        try:
            result = await self.db.warehouses.insert_one(warehouse.model_dump(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("Warehouse code already exists")
        return await self.get(str(result.inserted_id))

    async def update(self, warehouse_id: str, data: WarehouseUpdate) -> dict:
        warehouse = await self.get(warehouse_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("is_default_pickup"):
            await self._clear_default_pickup()
        if changes:
            changes["updated_at"] = utcnow()
            await self.db.warehouses.update_one({"_id": warehouse["_id"]}, {"$set": changes})
        return await self.get(warehouse_id)

    async def delete(self, warehouse_id: str):
        warehouse = await self.get(warehouse_id)
        if await self.db.stock.find_one({"warehouse_id": warehouse_id, "quantity": {"$gt": 0}}):
            raise ConflictException("Warehouse still holds stock")
        await self.db.warehouses.delete_one({"_id": warehouse["_id"]})

    async def get_pickup_warehouse(self) -> dict:
        warehouse = await self.db.warehouses.find_one({"is_default_pickup": True, "is_active": True})
        if not warehouse:
            warehouse = await self.db.warehouses.find_one({"is_active": True}, sort=[("created_at", 1)])
        if not warehouse:
            raise BusinessRuleException("No active pickup warehouse configured")
        return serialize_doc(warehouse)

    async def _clear_default_pickup(self):
        await self.db.warehouses.update_many({"is_default_pickup": True}, {"$set": {"is_default_pickup": False}})


class StockService:
    """
    Per-warehouse stock levels.

    Every change goes through ``adjust``: decrements only apply while the
    stored quantity covers them, so quantity can never go negative, and each
    change appends a row to ``stock_adjustments``.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @staticmethod
    def _key(product_id: str, variant_id: Optional[str], warehouse_id: str) -> dict:
        return {"product_id": product_id, "variant_id": variant_id, "warehouse_id": warehouse_id}

    async def available(self, product_id: str, variant_id: Optional[str], warehouse_id: str) -> int:
        stock = await self.db.stock.find_one(self._key(product_id, variant_id, warehouse_id))
        return stock["quantity"] if stock else 0

    async def adjust(
        self,
        product_id: str,
        variant_id: Optional[str],
        warehouse_id: str,
        delta: int,
        reason: AdjustmentReason,
        actor_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        session=None,
    ) -> dict:
        key = self._key(product_id, variant_id, warehouse_id)
        now = utcnow()

        if delta >= 0:
            before = await self.db.stock.find_one_and_update(
                key,
                {
                    "$inc": {"quantity": delta},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"low_stock_threshold": DEFAULT_LOW_STOCK_THRESHOLD, "created_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            quantity_before = before["quantity"] if before else 0
        else:
            before = await self.db.stock.find_one_and_update(
                {**key, "quantity": {"$gte": -delta}},
                {"$inc": {"quantity": delta}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            if not before:
                raise InsufficientStockError()
            quantity_before = before["quantity"]

        stock = await self.db.stock.find_one(key, session=session)
        adjustment = StockAdjustmentDB(
            stock_id=str(stock["_id"]),
            delta=delta,
            quantity_before=quantity_before,
            quantity_after=quantity_before + delta,
            reason=reason,
            reference_id=reference_id,
            actor_id=actor_id,
            notes=notes,
        )
        await self.db.stock_adjustments.insert_one(adjustment.model_dump(by_alias=True, exclude={"id"}), session=session)
        return serialize_doc(stock)

    async def reserve(
        self,
        lines: List[dict],
        warehouse_id: str,
        reference_id: str,
        actor_id: Optional[str] = None,
        session=None,
    ):
        """
        Take every line out of stock or none of them.

        Lines are decremented one at a time; if any line cannot be covered
        ``InsufficientStockError`` names the failing item. Inside a transaction
        (``session``) the abort undoes the lines already taken, otherwise they
        are put back here.
        """
        taken = []
        for line in lines:
            try:
                await self.adjust(
                    line["product_id"], line.get("variant_id"), warehouse_id, -line["quantity"],
                    AdjustmentReason.ORDER_PLACED, actor_id=actor_id, reference_id=reference_id, session=session,
                )
            except InsufficientStockError:
                if session is None:
                    await self.release(taken, warehouse_id, reference_id, notes="Reservation rolled back")
                raise InsufficientStockError(f"Insufficient stock for {line.get('name', line['product_id'])}")
            taken.append(line)

    async def release(
        self,
        lines: List[dict],
        warehouse_id: str,
        reference_id: str,
        reason: AdjustmentReason = AdjustmentReason.ORDER_CANCELLED,
        notes: Optional[str] = None,
    ):
        for line in lines:
            await self.adjust(
                line["product_id"], line.get("variant_id"), warehouse_id, line["quantity"],
                reason, reference_id=reference_id, notes=notes,
            )

    async def list(
        self,
        product_id: Optional[str] = None,
        warehouse_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[dict]:
        query = {}
        if product_id:
            query["product_id"] = product_id
        if warehouse_id:
            query["warehouse_id"] = warehouse_id
        cursor = self.db.stock.find(query).sort("updated_at", -1).skip(skip).limit(limit)
        return [self._with_flags(doc) async for doc in cursor]

    async def low_stock(self, warehouse_id: Optional[str] = None) -> List[dict]:
        query = {"warehouse_id": warehouse_id} if warehouse_id else {}
        cursor = self.db.stock.find(query).sort("quantity", 1)
        return [self._with_flags(doc) async for doc in cursor if doc["quantity"] <= doc["low_stock_threshold"]]

    async def get(self, stock_id: str) -> dict:
        stock = await self.db.stock.find_one({"_id": str_to_oid(stock_id)})
        if not stock:
            raise NotFoundException("Stock record not found")
        return self._with_flags(stock)

    async def set_threshold(self, stock_id: str, threshold: int) -> dict:
        stock = await self.get(stock_id)
        await self.db.stock.update_one(
            {"_id": stock["_id"]},
            {"$set": {"low_stock_threshold": threshold, "updated_at": utcnow()}},
        )
        return await self.get(stock_id)

    async def history(self, stock_id: str, skip: int = 0, limit: int = 50) -> List[dict]:
        await self.get(stock_id)
        cursor = self.db.stock_adjustments.find({"stock_id": stock_id}).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    @staticmethod
    def _with_flags(doc: dict) -> dict:
        doc = serialize_doc(doc)
        doc["is_low_stock"] = doc["quantity"] <= doc.get("low_stock_threshold", DEFAULT_LOW_STOCK_THRESHOLD)
        return doc
