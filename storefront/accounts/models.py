from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, EmailStr, Field

from storefront.shared.utils import utcnow


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class PermissionModule(str, Enum):
    ADDRESSES = "addresses"
    BANNERS = "banners"
    CATEGORIES = "categories"
    CONSULTATIONS = "consultations"
    COUPONS = "coupons"
    ORDERS = "orders"
    PRODUCTS = "products"
    RETURNS = "returns"
    STOCK = "stock"
    WAREHOUSES = "warehouses"
    USERS = "users"


class PermissionAction(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    email: EmailStr
    password_hash: str
    first_name: str
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.USER
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True


class PermissionDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    module: PermissionModule
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False
    granted_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True
