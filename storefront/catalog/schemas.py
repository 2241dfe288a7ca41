from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from decimal import Decimal
from datetime import datetime

from storefront.shared.money import Rupees
from storefront.shared.security_config import sanitize_input
from storefront.shared.utils import to_naive_utc

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


# --- Categories ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: Optional[str] = None
    parent_id: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True

    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: Optional[str] = None
    parent_id: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class CategoryResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool
    created_at: datetime


# --- Products ---

class Dimensions(BaseModel):
    weight: Optional[float] = Field(None, gt=0, description="kg")
    length: Optional[float] = Field(None, gt=0, description="cm")
    breadth: Optional[float] = Field(None, gt=0, description="cm")
    height: Optional[float] = Field(None, gt=0, description="cm")


class VariantCreate(Dimensions):
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    attributes: Dict[str, str] = {}
    price: Decimal = Field(..., gt=0)
    mrp: Optional[Decimal] = Field(None, gt=0)
    is_active: bool = True

    @field_validator('name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class ProductCreate(Dimensions):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: Optional[str] = None
    category_id: Optional[str] = None
    sku: str = Field(..., min_length=1, max_length=64)
    price: Decimal = Field(..., gt=0)
    mrp: Optional[Decimal] = Field(None, gt=0)
    hsn_code: Optional[str] = None
    images: List[str] = []
    variants: List[VariantCreate] = []
    is_active: bool = True

    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @model_validator(mode="after")
    def check_mrp(self):
        if self.mrp is not None and self.mrp < self.price:
            raise ValueError("MRP cannot be lower than the selling price")
        return self


class ProductUpdate(Dimensions):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: Optional[str] = None
    category_id: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0)
    mrp: Optional[Decimal] = Field(None, gt=0)
    hsn_code: Optional[str] = None
    images: Optional[List[str]] = None
    variants: Optional[List[VariantCreate]] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class VariantResponse(BaseModel):
    id: str
    sku: str
    name: str
    attributes: Dict[str, str] = {}
    price: Rupees
    mrp: Optional[Rupees] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    is_active: bool


class ProductResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    sku: str
    price: Rupees
    mrp: Optional[Rupees] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    hsn_code: Optional[str] = None
    images: List[str] = []
    variants: List[VariantResponse] = []
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int


# --- Banners ---

class BannerCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=150)
    subtitle: Optional[str] = None
    image_url: str
    link_url: Optional[str] = None
    position: int = Field(0, ge=0)
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator('title', 'subtitle')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('starts_at', 'ends_at')
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class BannerUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=150)
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    link_url: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator('title', 'subtitle')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('starts_at', 'ends_at')
    def normalize_dates(cls, v):
        return to_naive_utc(v)


class BannerResponse(BaseModel):
    id: str
    title: str
    subtitle: Optional[str] = None
    image_url: str
    link_url: Optional[str] = None
    position: int
    is_active: bool
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime
