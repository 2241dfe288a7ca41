from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field

from storefront.shared.utils import utcnow

# Package defaults when a product carries no measurements
DEFAULT_WEIGHT_KG = 0.5
DEFAULT_LENGTH_CM = 35.0
DEFAULT_BREADTH_CM = 25.0
DEFAULT_HEIGHT_CM = 5.0


class CategoryDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class VariantDB(BaseModel):
    id: str
    sku: str
    name: str
    attributes: Dict[str, str] = {}
    price: int
    mrp: Optional[int] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    is_active: bool = True


class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    sku: str
    price: int
    mrp: Optional[int] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    hsn_code: Optional[str] = None
    images: List[str] = []
    variants: List[VariantDB] = []
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class BannerDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    title: str
    subtitle: Optional[str] = None
    image_url: str
    link_url: Optional[str] = None
    position: int = 0
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
