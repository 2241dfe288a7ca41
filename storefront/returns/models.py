from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow


class ReturnReason(str, Enum):
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED_IN_TRANSIT = "damaged_in_transit"
    OTHER = "other"


# Our fault: the customer is not charged for the return pickup
FREE_RETURN_REASONS = {
    ReturnReason.DEFECTIVE,
    ReturnReason.WRONG_ITEM,
    ReturnReason.NOT_AS_DESCRIBED,
    ReturnReason.DAMAGED_IN_TRANSIT,
}


class RefundMethod(str, Enum):
    ORIGINAL_PAYMENT = "original_payment"
    BANK_TRANSFER = "bank_transfer"


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    RECEIVED = "received"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"
    CLOSED = "closed"


INACTIVE_RETURN_STATUSES = {ReturnStatus.REJECTED.value, ReturnStatus.CLOSED.value}

ALLOWED_TRANSITIONS = {
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.PICKED_UP},
    ReturnStatus.PICKUP_SCHEDULED: {ReturnStatus.PICKED_UP},
    ReturnStatus.PICKED_UP: {ReturnStatus.RECEIVED},
    ReturnStatus.RECEIVED: {ReturnStatus.REFUND_INITIATED},
    ReturnStatus.REFUND_INITIATED: {ReturnStatus.REFUND_COMPLETED},
    ReturnStatus.REFUND_COMPLETED: {ReturnStatus.CLOSED},
    ReturnStatus.REJECTED: {ReturnStatus.CLOSED},
    ReturnStatus.CLOSED: set(),
}


class ReturnItemDB(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str
    quantity: int = Field(..., gt=0)
    unit_price: int


class BankDetailsDB(BaseModel):
    account_holder_name: str
    account_number: str
    ifsc_code: str
    bank_name: Optional[str] = None


class ReturnDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    return_number: str
    user_id: str
    order_id: str
    order_number: str
    items: List[ReturnItemDB]
    reason: ReturnReason
    reason_details: Optional[str] = None
    image_urls: List[str] = []
    refund_method: RefundMethod
    bank_details: Optional[BankDetailsDB] = None
    items_refund: int
    shipping_refund: int
    return_shipping_fee: int
    refund_amount: int = Field(..., ge=0)
    status: ReturnStatus = ReturnStatus.PENDING
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_shipment: Optional[dict] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
