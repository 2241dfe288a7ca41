from typing import List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront.catalog.service import ProductService
from storefront.shared.utils import utcnow, AppException, NotFoundException, ConflictException
from storefront.shopping.schemas import CartItemAdd, MAX_LINE_QUANTITY


class CartService:
    def __init__(self, db: AsyncIOMotorDatabase, products: ProductService):
        self.db = db
        self.products = products

    async def _get_or_create(self, user_id: str) -> dict:
        cart = await self.db.carts.find_one({"user_id": user_id})
        if not cart:
            await self.db.carts.update_one(
                {"user_id": user_id},
                {"$setOnInsert": {"user_id": user_id, "items": [], "updated_at": utcnow()}},
                upsert=True,
            )
            cart = await self.db.carts.find_one({"user_id": user_id})
        return cart

    async def get_cart(self, user_id: str) -> dict:
        """Cart priced at current catalog prices."""
        cart = await self._get_or_create(user_id)
        items = []
        subtotal = 0
        for item in cart.get("items", []):
            line = {
                "item_id": item["item_id"],
                "product_id": item["product_id"],
                "variant_id": item.get("variant_id"),
                "quantity": item["quantity"],
            }
            try:
                resolved = await self.products.resolve_item(item["product_id"], item.get("variant_id"))
            except AppException:
                line["available"] = False
            else:
                line_total = resolved["unit_price"] * item["quantity"]
                line.update({
                    "name": resolved["name"],
                    "unit_price": resolved["unit_price"],
                    "line_total": line_total,
                    "available": True,
                })
                subtotal += line_total
            items.append(line)

        return {
            "user_id": user_id,
            "items": items,
            "item_count": sum(i["quantity"] for i in items),
            "subtotal": subtotal,
            "updated_at": cart.get("updated_at"),
        }

    async def get_lines(self, user_id: str) -> List[dict]:
        cart = await self.db.carts.find_one({"user_id": user_id})
        if not cart:
            return []
        return [
            {"product_id": i["product_id"], "variant_id": i.get("variant_id"), "quantity": i["quantity"]}
            for i in cart.get("items", [])
        ]

    async def add_item(self, user_id: str, data: CartItemAdd) -> dict:
        # Validates the product and variant
        await self.products.resolve_item(data.product_id, data.variant_id)

        cart = await self._get_or_create(user_id)
        items = cart.get("items", [])
        for item in items:
            if item["product_id"] == data.product_id and item.get("variant_id") == data.variant_id:
                item["quantity"] = min(item["quantity"] + data.quantity, MAX_LINE_QUANTITY)
                break
        else:
            items.append({
                "item_id": str(ObjectId()),
                "product_id": data.product_id,
                "variant_id": data.variant_id,
                "quantity": data.quantity,
                "added_at": utcnow(),
            })

        await self.db.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": items, "updated_at": utcnow()}},
        )
        return await self.get_cart(user_id)

    async def update_item(self, user_id: str, item_id: str, quantity: int) -> dict:
        result = await self.db.carts.update_one(
            {"user_id": user_id, "items.item_id": item_id},
            {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFoundException("Item not found in cart")
        return await self.get_cart(user_id)

    async def remove_item(self, user_id: str, item_id: str) -> dict:
        result = await self.db.carts.update_one(
            {"user_id": user_id, "items.item_id": item_id},
            {"$pull": {"items": {"item_id": item_id}}, "$set": {"updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFoundException("Item not found in cart")
        return await self.get_cart(user_id)

    async def clear(self, user_id: str):
        await self.db.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": utcnow()}},
        )


class WishlistService:
    def __init__(self, db: AsyncIOMotorDatabase, products: ProductService):
        self.db = db
        self.products = products

    async def get_wishlist(self, user_id: str) -> dict:
        wishlist = await self.db.wishlists.find_one({"user_id": user_id}) or {"items": []}
        items = []
        for item in wishlist.get("items", []):
            entry = {"product_id": item["product_id"], "added_at": item["added_at"], "available": False}
            product = await self.db.products.find_one({"_id": ObjectId(item["product_id"])})
            if product:
                entry.update({
                    "name": product["name"],
                    "price": product["price"],
                    "image_url": (product.get("images") or [None])[0],
                    "available": product.get("is_active", True),
                })
            items.append(entry)
        return {"user_id": user_id, "items": items, "is_public": wishlist.get("is_public", False)}

    async def add_item(self, user_id: str, product_id: str) -> dict:
        await self.products.get(product_id)
        if await self.db.wishlists.find_one({"user_id": user_id, "items.product_id": product_id}):
            raise ConflictException("Product already in wishlist")
        await self.db.wishlists.update_one(
            {"user_id": user_id},
            {
                "$push": {"items": {"product_id": product_id, "added_at": utcnow()}},
                "$setOnInsert": {"is_public": False},
            },
            upsert=True,
        )
        return await self.get_wishlist(user_id)

    async def remove_item(self, user_id: str, product_id: str) -> dict:
        await self.db.wishlists.update_one(
            {"user_id": user_id},
            {"$pull": {"items": {"product_id": product_id}}},
        )
        return await self.get_wishlist(user_id)

    async def clear(self, user_id: str):
        await self.db.wishlists.update_one({"user_id": user_id}, {"$set": {"items": []}})
