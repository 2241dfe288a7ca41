from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponDB(BaseModel):
    """
    Stored coupon.

    ``discount_value`` is basis points for percentage coupons and paise for
    fixed ones; every other amount is paise.
    """
    id: Optional[str] = Field(None, alias="_id")
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: int
    min_order_value: int = 0
    max_discount_amount: Optional[int] = None
    max_usage: Optional[int] = None
    per_user_limit: Optional[int] = None
    usage_count: int = 0
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
