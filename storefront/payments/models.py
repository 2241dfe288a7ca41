from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    RAZORPAY = "razorpay"
    COD = "cod"


class PaymentDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: str
    user_id: str
    method: PaymentMethod
    instrument: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount: int
    refund_amount: int = 0
    currency: str = "INR"
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
