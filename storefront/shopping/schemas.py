from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from storefront.shared.money import Rupees

MAX_LINE_QUANTITY = 10


class CartItemAdd(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, gt=0, le=MAX_LINE_QUANTITY)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0, le=MAX_LINE_QUANTITY)


class CartItemResponse(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    name: Optional[str] = None
    unit_price: Optional[Rupees] = None
    line_total: Optional[Rupees] = None
    available: bool = True


class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    item_count: int
    subtotal: Rupees
    updated_at: Optional[datetime] = None


class WishlistItemAdd(BaseModel):
    product_id: str


class WishlistItemResponse(BaseModel):
    product_id: str
    name: Optional[str] = None
    price: Optional[Rupees] = None
    image_url: Optional[str] = None
    available: bool = True
    added_at: datetime


class WishlistResponse(BaseModel):
    user_id: str
    items: List[WishlistItemResponse]
    is_public: bool = False
