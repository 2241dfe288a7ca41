from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Admin status changes; shipping is normally done by the scheduler
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderItemDB(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str
    hsn_code: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0)
    line_total: int = Field(..., ge=0)


class OrderCouponDB(BaseModel):
    id: str
    code: str
    discount: int


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    items: List[OrderItemDB]
    subtotal: int = Field(..., ge=0)
    discount: int = Field(0, ge=0)
    shipping_cost: int = Field(0, ge=0)
    tax_amount: int = Field(0, ge=0)
    total: int = Field(..., ge=0)
    payment_method: str
    shipping_address: dict
    billing_address: dict
    coupon: Optional[OrderCouponDB] = None
    warehouse_id: str
    shipping_info: dict
    tracking_number: Optional[str] = None
    courier_name: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
