import re
import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from storefront.catalog.models import (
    CategoryDB, ProductDB, VariantDB, BannerDB,
    DEFAULT_WEIGHT_KG, DEFAULT_LENGTH_CM, DEFAULT_BREADTH_CM, DEFAULT_HEIGHT_CM,
)
from storefront.catalog.schemas import (
    CategoryCreate, CategoryUpdate, ProductCreate, ProductUpdate, VariantCreate,
    BannerCreate, BannerUpdate,
)
from storefront.shared.money import to_paise
from storefront.shared.utils import (
    str_to_oid, serialize_doc, utcnow,
    NotFoundException, ConflictException, BusinessRuleException, ValidationException,
)

logger = logging.getLogger("storefront.catalog")

MONEY_FIELDS = ("price", "mrp")


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "item"


def _money_to_paise(values: dict) -> dict:
    for field in MONEY_FIELDS:
        if values.get(field) is not None:
            values[field] = to_paise(values[field])
    return values


class CategoryService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list(self, include_inactive: bool = False, parent_id: Optional[str] = None) -> List[dict]:
        query = {} if include_inactive else {"is_active": True}
        if parent_id:
            query["parent_id"] = parent_id
        cursor = self.db.categories.find(query).sort("name", 1)
        return [serialize_doc(doc) async for doc in cursor]

    async def get(self, category_id: str) -> dict:
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise NotFoundException("Category not found")
        return serialize_doc(category)

    async def create(self, data: CategoryCreate) -> dict:
        if data.parent_id:
            await self.get(data.parent_id)
        category = CategoryDB(**data.model_dump(exclude={"slug"}), slug=data.slug or slugify(data.name))
        try:
            result = await self.db.categories.insert_one(category.model_dump(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("A category with this slug already exists")
        return await self.get(str(result.inserted_id))

    async def update(self, category_id: str, data: CategoryUpdate) -> dict:
        category = await self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("parent_id"):
            if changes["parent_id"] == category_id:
                raise ValidationException("A category cannot be its own parent")
            await self.get(changes["parent_id"])
        if changes:
            changes["updated_at"] = utcnow()
            try:
                await self.db.categories.update_one({"_id": category["_id"]}, {"$set": changes})
            except DuplicateKeyError:
                raise ConflictException("A category with this slug already exists")
        return await self.get(category_id)

    async def delete(self, category_id: str):
        category = await self.get(category_id)
        if await self.db.products.find_one({"category_id": category_id}):
            raise ConflictException("Category still has products")
        if await self.db.categories.find_one({"parent_id": category_id}):
            raise ConflictException("Category still has sub-categories")
        await self.db.categories.delete_one({"_id": category["_id"]})


class ProductService:
    def __init__(self, db: AsyncIOMotorDatabase, categories: CategoryService):
        self.db = db
        self.categories = categories

    def _build_variants(self, variants: List[VariantCreate], existing: Optional[List[dict]] = None) -> List[dict]:
        skus = [v.sku for v in variants]
        if len(skus) != len(set(skus)):
            raise ValidationException("Variant SKUs must be unique")
        # Keep ids stable by SKU so carts keep pointing at the same variant
        known_ids = {v["sku"]: v["id"] for v in existing or []}
        built = []
        for variant in variants:
            values = _money_to_paise(variant.model_dump())
            variant_id = known_ids.get(variant.sku) or str(ObjectId())
            built.append(VariantDB(id=variant_id, **values).model_dump())
        return built

    async def list(
        self,
        category_id: Optional[str] = None,
        search: Optional[str] = None,
        min_price: Optional[int] = None,
        max_price: Optional[int] = None,
        include_inactive: bool = False,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[dict], int]:
        query = {} if include_inactive else {"is_active": True}
        if category_id:
            query["category_id"] = category_id
        if search:
            query["name"] = {"$regex": re.escape(search), "$options": "i"}
        price_query = {}
        if min_price is not None:
            price_query["$gte"] = min_price
        if max_price is not None:
            price_query["$lte"] = max_price
        if price_query:
            query["price"] = price_query

        total = await self.db.products.count_documents(query)
        cursor = self.db.products.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor], total

    async def get(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"_id": str_to_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")
        return serialize_doc(product)

    async def create(self, data: ProductCreate) -> dict:
        if data.category_id:
            await self.categories.get(data.category_id)
        values = _money_to_paise(data.model_dump(exclude={"variants", "slug"}))
        product = ProductDB(
            **values,
            slug=data.slug or slugify(data.name),
            variants=self._build_variants(data.variants),
        )
        try:
            result = await self.db.products.insert_one(product.model_dump(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("A product with this slug or SKU already exists")
        logger.info(f"Created product {product.sku}")
        return await self.get(str(result.inserted_id))

    async def update(self, product_id: str, data: ProductUpdate) -> dict:
        product = await self.get(product_id)
        changes = data.model_dump(exclude_unset=True, exclude={"variants"})
        if changes.get("category_id"):
            await self.categories.get(changes["category_id"])
        changes = _money_to_paise(changes)
        if data.variants is not None:
            changes["variants"] = self._build_variants(data.variants, product.get("variants"))

        mrp = changes.get("mrp", product.get("mrp"))
        price = changes.get("price", product["price"])
        if mrp is not None and mrp < price:
            raise ValidationException("MRP cannot be lower than the selling price")

        if changes:
            changes["updated_at"] = utcnow()
            try:
                await self.db.products.update_one({"_id": product["_id"]}, {"$set": changes})
            except DuplicateKeyError:
                raise ConflictException("A product with this slug or SKU already exists")
        return await self.get(product_id)

    async def delete(self, product_id: str):
        product = await self.get(product_id)
        await self.db.products.delete_one({"_id": product["_id"]})
        await self.db.carts.update_many({}, {"$pull": {"items": {"product_id": product_id}}})
        await self.db.wishlists.update_many({}, {"$pull": {"items": {"product_id": product_id}}})

    async def resolve_item(self, product_id: str, variant_id: Optional[str] = None) -> dict:
        """
        Live price and package measurements for one purchasable line.

        Variant values win over the product's; missing measurements fall back
        to the package defaults.
        """
        product = await self.get(product_id)
        if not product.get("is_active", True):
            raise BusinessRuleException(f"{product['name']} is no longer available")

        variant = None
        if variant_id:
            variant = next((v for v in product.get("variants", []) if v["id"] == variant_id), None)
            if not variant:
                raise NotFoundException("Product variant not found")
            if not variant.get("is_active", True):
                raise BusinessRuleException(f"{product['name']} ({variant['name']}) is no longer available")
        elif product.get("variants"):
            raise ValidationException(f"Select a variant of {product['name']}")

        source = variant or {}

        def measure(field, default):
            return source.get(field) or product.get(field) or default

        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "name": product["name"] if not variant else f"{product['name']} - {variant['name']}",
            "sku": source.get("sku") or product["sku"],
            "hsn_code": product.get("hsn_code"),
            "unit_price": source.get("price") or product["price"],
            "weight": measure("weight", DEFAULT_WEIGHT_KG),
            "length": measure("length", DEFAULT_LENGTH_CM),
            "breadth": measure("breadth", DEFAULT_BREADTH_CM),
            "height": measure("height", DEFAULT_HEIGHT_CM),
        }


class BannerService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list(self) -> List[dict]:
        cursor = self.db.banners.find({}).sort("position", 1)
        return [serialize_doc(doc) async for doc in cursor]

    async def list_active(self) -> List[dict]:
        now = utcnow()
        cursor = self.db.banners.find({"is_active": True}).sort("position", 1)
        banners = []
        async for doc in cursor:
            if doc.get("starts_at") and doc["starts_at"] > now:
                continue
            if doc.get("ends_at") and doc["ends_at"] < now:
                continue
            banners.append(serialize_doc(doc))
        return banners

    async def get(self, banner_id: str) -> dict:
        banner = await self.db.banners.find_one({"_id": str_to_oid(banner_id)})
        if not banner:
            raise NotFoundException("Banner not found")
        return serialize_doc(banner)

    async def create(self, data: BannerCreate) -> dict:
        banner = BannerDB(**data.model_dump())
        result = await self.db.banners.insert_one(banner.model_dump(by_alias=True, exclude={"id"}))
        return await self.get(str(result.inserted_id))

    async def update(self, banner_id: str, data: BannerUpdate) -> dict:
        banner = await self.get(banner_id)
        changes = data.model_dump(exclude_unset=True)
        starts_at = changes.get("starts_at", banner.get("starts_at"))
        ends_at = changes.get("ends_at", banner.get("ends_at"))
        if starts_at and ends_at and ends_at <= starts_at:
            raise ValidationException("ends_at must be after starts_at")
        if changes:
            changes["updated_at"] = utcnow()
            await self.db.banners.update_one({"_id": banner["_id"]}, {"$set": changes})
        return await self.get(banner_id)

    async def delete(self, banner_id: str):
        banner = await self.get(banner_id)
        await self.db.banners.delete_one({"_id": banner["_id"]})
