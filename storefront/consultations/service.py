import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.catalog.service import ProductService, CategoryService
from storefront.consultations.models import (
    ConsultationDB, ConsultationStatus, ConsultationPlatform, ALLOWED_TRANSITIONS, USER_CANCELLABLE,
)
from storefront.consultations.schemas import ConsultationCreate, ConsultationStatusUpdate
from storefront.notifications.email import EmailService
from storefront.shared.utils import (
    utcnow, str_to_oid, serialize_doc,
    BusinessRuleException, NotFoundException, ForbiddenException, ValidationException,
)

logger = logging.getLogger("storefront.consultations")


class ConsultationService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        products: ProductService,
        categories: CategoryService,
        mailer: EmailService,
    ):
        self.db = db
        self.products = products
        self.categories = categories
        self.mailer = mailer

    async def create(self, user: dict, data: ConsultationCreate) -> dict:
        if data.preferred_date < utcnow():
            raise ValidationException("Consultation date must be in the future")
        if data.product_id:
            await self.products.get(data.product_id)
        if data.category_id:
            await self.categories.get(data.category_id)

        consultation = ConsultationDB(user_id=user["id"], **data.model_dump())
        doc = consultation.model_dump(by_alias=True, exclude={"id"})
        result = await self.db.consultations.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info("Consultation requested", extra={"user_id": user["id"]})
        return serialize_doc(doc)

    async def _load(self, consultation_id: str) -> dict:
        doc = await self.db.consultations.find_one({"_id": str_to_oid(consultation_id)})
        if not doc:
            raise NotFoundException("Consultation not found")
        return serialize_doc(doc)

    async def get(self, user: dict, consultation_id: str) -> dict:
        doc = await self._load(consultation_id)
        if doc["user_id"] != user["id"]:
            raise ForbiddenException("Not authorized to view this consultation")
        return doc

    async def list_for_user(
        self, user_id: str, status: Optional[ConsultationStatus] = None, skip: int = 0, limit: int = 10
    ) -> List[dict]:
        query = {"user_id": user_id}
        if status:
            query["status"] = status.value
        cursor = self.db.consultations.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def list_all(
        self,
        status: Optional[ConsultationStatus] = None,
        platform: Optional[ConsultationPlatform] = None,
        sort_by: str = "created_at",
        skip: int = 0,
        limit: int = 10,
    ) -> List[dict]:
        query = {}
        if status:
            query["status"] = status.value
        if platform:
            query["platform"] = platform.value
        cursor = self.db.consultations.find(query).sort(sort_by, -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def cancel(self, user: dict, consultation_id: str) -> dict:
        doc = await self.get(user, consultation_id)
        if doc["status"] not in USER_CANCELLABLE:
            raise BusinessRuleException(f"Cannot cancel consultation with status {doc['status']}")
        updated = await self.db.consultations.find_one_and_update(
            {"_id": doc["_id"], "status": {"$in": list(USER_CANCELLABLE)}},
            {"$set": {"status": ConsultationStatus.CANCELLED.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleException("Consultation status changed, please refresh and try again")
        return serialize_doc(updated)

    async def update_status(self, admin: dict, consultation_id: str, data: ConsultationStatusUpdate) -> dict:
        doc = await self._load(consultation_id)
        current = ConsultationStatus(doc["status"])
        if data.status not in ALLOWED_TRANSITIONS[current]:
            raise BusinessRuleException(f"Cannot update consultation with status {current.value} to {data.status.value}")

        changes = {"status": data.status.value, "updated_at": utcnow()}
        if data.status == ConsultationStatus.APPROVED:
            if not data.meeting_link and doc["platform"] != ConsultationPlatform.PHONE.value:
                raise ValidationException("Meeting link is required for approval")
            changes["meeting_link"] = data.meeting_link
            changes["approved_by"] = admin["id"]
        elif data.status == ConsultationStatus.REJECTED:
            changes["rejection_reason"] = data.rejection_reason

        updated = await self.db.consultations.find_one_and_update(
            {"_id": doc["_id"], "status": current.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleException("Consultation status changed, please refresh and try again")

        owner = await self.db.users.find_one({"_id": str_to_oid(doc["user_id"])})
        if owner and data.status in (ConsultationStatus.APPROVED, ConsultationStatus.REJECTED):
            await self.mailer.send_consultation_update(owner["email"], updated)
        logger.info(
            f"Consultation {consultation_id} moved {current.value} -> {data.status.value}",
            extra={"user_id": admin["id"]},
        )
        return serialize_doc(updated)
