from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional
from datetime import datetime

from storefront.addresses.schemas import PINCODE_PATTERN, PHONE_PATTERN
from storefront.inventory.models import AdjustmentReason
from storefront.shared.security_config import sanitize_input


class WarehouseCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    code: str = Field(..., pattern=r"^[A-Za-z0-9_-]{2,20}$")
    address_line1: str = Field(..., min_length=3)
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    country: str = "India"
    contact_person: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    is_default_pickup: bool = False
    is_active: bool = True

    @field_validator('code')
    def normalize_code(cls, v):
        return v.upper()

    @field_validator('name', 'address_line1', 'address_line2', 'city', 'state', 'contact_person')
    def sanitize_text(cls, v):
        return sanitize_input(v)


class WarehouseUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    country: Optional[str] = None
    contact_person: Optional[str] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    is_default_pickup: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'address_line1', 'address_line2', 'city', 'state', 'contact_person')
    def sanitize_text(cls, v):
        return sanitize_input(v)


class WarehouseResponse(BaseModel):
    id: str
    name: str
    code: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str
    contact_person: str
    phone: str
    email: Optional[str] = None
    is_default_pickup: bool
    is_active: bool
    created_at: datetime


class StockAdjustRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    delta: int = Field(..., description="Positive to add units, negative to remove")
    reason: AdjustmentReason = AdjustmentReason.MANUAL_ADJUSTMENT
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('delta')
    def non_zero(cls, v):
        if v == 0:
            raise ValueError("delta must not be zero")
        return v

    @field_validator('reason')
    def manual_reasons_only(cls, v):
        if v in (AdjustmentReason.ORDER_PLACED, AdjustmentReason.ORDER_CANCELLED, AdjustmentReason.RETURN_RECEIVED):
            raise ValueError("This reason is recorded automatically")
        return v

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)


class StockThresholdUpdate(BaseModel):
    low_stock_threshold: int = Field(..., ge=0)


class StockResponse(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    quantity: int
    low_stock_threshold: int
    is_low_stock: bool = False
    updated_at: Optional[datetime] = None


class StockAdjustmentResponse(BaseModel):
    id: str
    stock_id: str
    delta: int
    quantity_before: int
    quantity_after: int
    reason: AdjustmentReason
    reference_id: Optional[str] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
