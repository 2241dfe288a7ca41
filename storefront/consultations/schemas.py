from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime

from storefront.consultations.models import ConsultationPlatform, ConsultationStatus
from storefront.shared.security_config import sanitize_input
from storefront.shared.utils import to_naive_utc

TIME_PATTERN = r"^([01]?\d|2[0-3]):[0-5]\d$"


class ConsultationCreate(BaseModel):
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    platform: ConsultationPlatform
    preferred_date: datetime
    preferred_time: str = Field(..., pattern=TIME_PATTERN)
    is_purchase_consultation: bool = False
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator('preferred_date')
    def normalize_date(cls, v):
        return to_naive_utc(v)

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def check_subject(self):
        if not self.product_id and not self.category_id:
            raise ValueError("Either product_id or category_id must be provided")
        return self


class ConsultationStatusUpdate(BaseModel):
    status: ConsultationStatus
    meeting_link: Optional[str] = Field(None, pattern=r"^https?://", max_length=500)
    rejection_reason: Optional[str] = Field(None, max_length=500)

    @field_validator('rejection_reason')
    def sanitize_reason(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def check_details(self):
        if self.status == ConsultationStatus.REJECTED and not self.rejection_reason:
            raise ValueError("Rejection reason is required")
        return self


class ConsultationResponse(BaseModel):
    id: str
    user_id: str
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    platform: ConsultationPlatform
    preferred_date: datetime
    preferred_time: str
    is_purchase_consultation: bool
    notes: Optional[str] = None
    status: ConsultationStatus
    meeting_link: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
