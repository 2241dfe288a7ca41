from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow


class ConsultationPlatform(str, Enum):
    WHATSAPP = "whatsapp"
    GOOGLE_MEET = "google_meet"
    ZOOM = "zoom"
    PHONE = "phone"


class ConsultationStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    ConsultationStatus.REQUESTED: {ConsultationStatus.APPROVED, ConsultationStatus.REJECTED, ConsultationStatus.CANCELLED},
    ConsultationStatus.APPROVED: {ConsultationStatus.COMPLETED, ConsultationStatus.REJECTED, ConsultationStatus.CANCELLED},
    ConsultationStatus.REJECTED: set(),
    ConsultationStatus.COMPLETED: set(),
    ConsultationStatus.CANCELLED: set(),
}

# Statuses a customer may still cancel from
USER_CANCELLABLE = {ConsultationStatus.REQUESTED.value, ConsultationStatus.APPROVED.value}


class ConsultationDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    platform: ConsultationPlatform
    preferred_date: datetime
    preferred_time: str
    is_purchase_consultation: bool = False
    notes: Optional[str] = None
    status: ConsultationStatus = ConsultationStatus.REQUESTED
    meeting_link: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
