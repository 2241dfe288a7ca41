from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from datetime import datetime

from storefront.orders.models import OrderStatus
from storefront.payments.models import PaymentMethod
from storefront.payments.schemas import PaymentResponse, CheckoutSession
from storefront.shared.money import Rupees
from storefront.shared.security_config import sanitize_input
from storefront.shopping.schemas import MAX_LINE_QUANTITY


class OrderLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0, le=MAX_LINE_QUANTITY)


class OrderCreate(BaseModel):
    # Omit items to check out the cart
    items: Optional[List[OrderLine]] = Field(None, min_length=1)
    shipping_address_id: str
    billing_address_id: Optional[str] = None
    coupon_code: Optional[str] = Field(None, max_length=30)
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY
    courier_id: Optional[int] = None
    courier_preference: Literal["cheapest", "fastest"] = "cheapest"
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('coupon_code')
    def normalize_code(cls, v):
        return v.strip().upper() if v else None

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)


class OrderCancel(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)

    @field_validator('reason')
    def sanitize_reason(cls, v):
        return sanitize_input(v)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = Field(None, max_length=50)
    courier_name: Optional[str] = Field(None, max_length=100)


class OrderItemResponse(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str
    quantity: int
    unit_price: Rupees
    line_total: Rupees


class CourierResponse(BaseModel):
    courier_company_id: int
    courier_name: str
    freight_charge: Rupees
    estimated_delivery_days: Optional[int] = None
    etd: Optional[str] = None


class OrderPreviewResponse(BaseModel):
    items: List[OrderItemResponse]
    subtotal: Rupees
    discount: Rupees
    shipping_cost: Rupees
    tax_amount: Rupees
    total: Rupees
    coupon_code: Optional[str] = None
    coupon_error: Optional[str] = None
    is_free_shipping: bool
    serviceable: bool
    cod_available: bool
    courier: Optional[CourierResponse] = None
    couriers: List[CourierResponse] = []


class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    items: List[OrderItemResponse]
    subtotal: Rupees
    discount: Rupees
    shipping_cost: Rupees
    tax_amount: Rupees
    total: Rupees
    payment_method: PaymentMethod
    shipping_address: dict
    billing_address: dict
    coupon_code: Optional[str] = None
    tracking_number: Optional[str] = None
    courier_name: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "OrderResponse":
        coupon = doc.get("coupon") or {}
        return cls(**{**doc, "coupon_code": coupon.get("code")})


class CheckoutResponse(BaseModel):
    order: OrderResponse
    payment: PaymentResponse
    checkout: Optional[CheckoutSession] = None


class CancelCheckResponse(BaseModel):
    can_cancel: bool
    reason: Optional[str] = None


class VerifyPaymentResponse(BaseModel):
    order: OrderResponse
    payment: Optional[PaymentResponse] = None
