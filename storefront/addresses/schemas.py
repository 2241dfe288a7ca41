from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum

from storefront.shared.security_config import sanitize_input

PINCODE_PATTERN = r"^[1-9]\d{5}$"
PHONE_PATTERN = r"^[6-9]\d{9}$"


class AddressType(str, Enum):
    SHIPPING = "shipping"
    BILLING = "billing"
    BOTH = "both"


class AddressCreate(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    line1: str = Field(..., min_length=3, max_length=200)
    line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    country: str = "India"
    type: AddressType = AddressType.BOTH
    is_default: bool = False

    @field_validator('full_name', 'line1', 'line2', 'landmark', 'city', 'state', 'country')
    def sanitize_text(cls, v):
        return sanitize_input(v)


class AddressUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    line1: Optional[str] = Field(None, min_length=3, max_length=200)
    line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=100)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    country: Optional[str] = None
    type: Optional[AddressType] = None
    is_default: Optional[bool] = None

    @field_validator('full_name', 'line1', 'line2', 'landmark', 'city', 'state', 'country')
    def sanitize_text(cls, v):
        return sanitize_input(v)


class AddressResponse(BaseModel):
    id: str
    user_id: str
    full_name: str
    phone: str
    line1: str
    line2: Optional[str] = None
    landmark: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str
    type: AddressType
    is_default: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
