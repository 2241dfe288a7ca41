from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime

from storefront.returns.models import ReturnReason, RefundMethod, ReturnStatus
from storefront.shared.money import Rupees
from storefront.shared.security_config import sanitize_input

IFSC_PATTERN = r"^[A-Z]{4}0[A-Z0-9]{6}$"


class ReturnItemRequest(BaseModel):
    item_id: str
    quantity: int = Field(..., gt=0)


class BankDetails(BaseModel):
    account_holder_name: str = Field(..., min_length=2, max_length=100)
    account_number: str = Field(..., pattern=r"^\d{9,18}$")
    ifsc_code: str = Field(..., pattern=IFSC_PATTERN)
    bank_name: Optional[str] = Field(None, max_length=100)

    @field_validator('ifsc_code', mode='before')
    def upper_ifsc(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class ReturnCreate(BaseModel):
    order_id: str
    items: List[ReturnItemRequest] = Field(..., min_length=1)
    reason: ReturnReason
    reason_details: Optional[str] = Field(None, max_length=1000)
    image_urls: List[str] = Field([], max_length=5)
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    bank_details: Optional[BankDetails] = None

    @field_validator('reason_details')
    def sanitize_details(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def check_refund_details(self):
        if self.refund_method == RefundMethod.BANK_TRANSFER and not self.bank_details:
            raise ValueError("Bank details are required for bank transfer refunds")
        if self.reason == ReturnReason.OTHER and not self.reason_details:
            raise ValueError("Please describe the reason for the return")
        item_ids = [item.item_id for item in self.items]
        if len(item_ids) != len(set(item_ids)):
            raise ValueError("Each order item can only be listed once")
        return self


class ReturnStatusUpdate(BaseModel):
    status: ReturnStatus
    admin_notes: Optional[str] = Field(None, max_length=1000)
    rejection_reason: Optional[str] = Field(None, max_length=500)

    @field_validator('admin_notes', 'rejection_reason')
    def sanitize_text(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def check_rejection(self):
        if self.status == ReturnStatus.REJECTED and not self.rejection_reason:
            raise ValueError("A rejection reason is required")
        return self


class ReturnItemResponse(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str
    quantity: int
    unit_price: Rupees


class ReturnableItem(BaseModel):
    item_id: str
    name: str
    ordered_quantity: int
    returnable_quantity: int
    unit_price: Rupees


class ReturnEligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    return_window_hours: int
    delivered_at: Optional[datetime] = None
    hours_remaining: Optional[float] = None
    items: List[ReturnableItem] = []


class ReturnResponse(BaseModel):
    id: str
    return_number: str
    order_id: str
    order_number: str
    items: List[ReturnItemResponse]
    reason: ReturnReason
    reason_details: Optional[str] = None
    image_urls: List[str] = []
    refund_method: RefundMethod
    bank_account: Optional[str] = None
    items_refund: Rupees
    shipping_refund: Rupees
    return_shipping_fee: Rupees
    refund_amount: Rupees
    status: ReturnStatus
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "ReturnResponse":
        bank = doc.get("bank_details")
        masked = f"XXXX{bank['account_number'][-4:]}" if bank else None
        return cls(**{**doc, "bank_account": masked})
