from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow

DEFAULT_LOW_STOCK_THRESHOLD = 10


class AdjustmentReason(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_CANCELLED = "order_cancelled"
    RETURN_RECEIVED = "return_received"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    DAMAGED = "damaged"
    RESTOCKING = "restocking"


class WarehouseDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    code: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str = "India"
    contact_person: str
    phone: str
    email: Optional[str] = None
    is_default_pickup: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class StockDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    product_id: str
    variant_id: Optional[str] = None
    warehouse_id: str
    quantity: int = Field(0, ge=0)
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class StockAdjustmentDB(BaseModel):
    """Append-only audit row; never updated or deleted."""
    id: Optional[str] = Field(None, alias="_id")
    stock_id: str
    delta: int
    quantity_before: int
    quantity_after: int
    reason: AdjustmentReason
    reference_id: Optional[str] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True
