from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront.addresses.schemas import AddressCreate, AddressUpdate
from storefront.shared.utils import str_to_oid, serialize_doc, utcnow, NotFoundException

SNAPSHOT_FIELDS = (
    "full_name", "phone", "line1", "line2", "landmark",
    "city", "state", "pincode", "country",
)


class AddressService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list_for_user(self, user_id: str) -> List[dict]:
        cursor = self.db.addresses.find({"user_id": user_id}).sort([("is_default", -1), ("created_at", -1)])
        return [serialize_doc(doc) async for doc in cursor]

    async def get(self, user_id: str, address_id: str) -> dict:
        address = await self.db.addresses.find_one({"_id": str_to_oid(address_id), "user_id": user_id})
        if not address:
            raise NotFoundException("Address not found")
        return serialize_doc(address)

    async def create(self, user_id: str, data: AddressCreate) -> dict:
        doc = data.model_dump(mode="json")
        # First address becomes the default
        if await self.db.addresses.count_documents({"user_id": user_id}) == 0:
            doc["is_default"] = True
        if doc["is_default"]:
            await self._clear_default(user_id)

        doc.update({"user_id": user_id, "created_at": utcnow(), "updated_at": None})
        result = await self.db.addresses.insert_one(doc)
        return serialize_doc(await self.db.addresses.find_one({"_id": result.inserted_id}))

    async def update(self, user_id: str, address_id: str, data: AddressUpdate) -> dict:
        address = await self.get(user_id, address_id)
        changes = data.model_dump(mode="json", exclude_unset=True)
        if changes.get("is_default"):
            await self._clear_default(user_id)
        if changes:
            changes["updated_at"] = utcnow()
            await self.db.addresses.update_one({"_id": address["_id"]}, {"$set": changes})
        return await self.get(user_id, address_id)

    async def delete(self, user_id: str, address_id: str):
        address = await self.get(user_id, address_id)
        await self.db.addresses.delete_one({"_id": address["_id"]})

        # Promote the most recent remaining address
        if address.get("is_default"):
            replacement = await self.db.addresses.find_one({"user_id": user_id}, sort=[("created_at", -1)])
            if replacement:
                await self.db.addresses.update_one({"_id": replacement["_id"]}, {"$set": {"is_default": True}})

    async def set_default(self, user_id: str, address_id: str) -> dict:
        address = await self.get(user_id, address_id)
        await self._clear_default(user_id)
        await self.db.addresses.update_one(
            {"_id": address["_id"]},
            {"$set": {"is_default": True, "updated_at": utcnow()}},
        )
        return await self.get(user_id, address_id)

    async def snapshot(self, user_id: str, address_id: str) -> dict:
        """Immutable copy of an address for embedding in an order."""
        address = await self.get(user_id, address_id)
        snapshot = {field: address.get(field) for field in SNAPSHOT_FIELDS}
        snapshot["address_id"] = address["id"]
        return snapshot

    async def _clear_default(self, user_id: str):
        await self.db.addresses.update_many(
            {"user_id": user_id, "is_default": True},
            {"$set": {"is_default": False}},
        )
