from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from storefront.payments.models import PaymentStatus, PaymentMethod
from storefront.shared.money import Rupees


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    method: PaymentMethod
    instrument: Optional[str] = None
    status: PaymentStatus
    amount: Rupees
    refund_amount: Rupees
    currency: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class CheckoutSession(BaseModel):
    """What the storefront needs to open the gateway's checkout widget."""
    key_id: str
    gateway_order_id: str
    amount: int
    currency: str = "INR"
    receipt: str
