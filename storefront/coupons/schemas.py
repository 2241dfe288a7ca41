from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from decimal import Decimal
from datetime import datetime

from storefront.coupons.models import DiscountType
from storefront.shared.money import Rupees
from storefront.shared.security_config import sanitize_input
from storefront.shared.utils import to_naive_utc

CODE_PATTERN = r"^[A-Za-z0-9_-]{3,30}$"


class CouponCreate(BaseModel):
    code: str = Field(..., pattern=CODE_PATTERN)
    description: Optional[str] = Field(None, max_length=300)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0)
    min_order_value: Decimal = Field(Decimal("0"), ge=0)
    max_discount_amount: Optional[Decimal] = Field(None, gt=0)
    max_usage: Optional[int] = Field(None, gt=0)
    per_user_limit: Optional[int] = Field(None, gt=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @field_validator('code')
    def normalize_code(cls, v):
        return v.strip().upper()

    @field_validator('description')
    def sanitize_description(cls, v):
        return sanitize_input(v)

    @field_validator('valid_from', 'valid_until')
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def check_rules(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.max_usage and self.per_user_limit and self.per_user_limit > self.max_usage:
            raise ValueError("per_user_limit cannot exceed max_usage")
        return self


class CouponUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=300)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = Field(None, gt=0)
    min_order_value: Optional[Decimal] = Field(None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(None, gt=0)
    max_usage: Optional[int] = Field(None, gt=0)
    per_user_limit: Optional[int] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator('description')
    def sanitize_description(cls, v):
        return sanitize_input(v)

    @field_validator('valid_from', 'valid_until')
    def normalize_dates(cls, v):
        return to_naive_utc(v)


class CouponResponse(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Rupees
    min_order_value: Rupees
    max_discount_amount: Optional[Rupees] = None
    max_usage: Optional[int] = None
    per_user_limit: Optional[int] = None
    usage_count: int
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    created_at: datetime


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=30)
    subtotal: Decimal = Field(..., ge=0)

    @field_validator('code')
    def normalize_code(cls, v):
        return v.strip().upper()


class CouponValidateResponse(BaseModel):
    code: str
    discount_type: DiscountType
    discount: Rupees
    final_amount: Rupees
