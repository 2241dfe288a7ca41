from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from datetime import datetime

from storefront.accounts.models import UserRole, PermissionModule
from storefront.shared.security_config import password_problems, sanitize_input


class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, pattern=r"^[6-9]\d{9}$")

    @field_validator('password')
    def password_complexity(cls, v):
        problems = password_problems(v)
        if problems:
            raise ValueError(f"Password needs {', '.join(problems)}")
        return v

    @field_validator('first_name', 'last_name')
    def sanitize_names(cls, v):
        return sanitize_input(v)


class AdminCreate(UserRegister):
    role: UserRole = UserRole.ADMIN


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    id: str
    email: EmailStr
    first_name: str
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole
    is_active: bool
    created_at: datetime


class RoleUpdate(BaseModel):
    role: UserRole


class StatusUpdate(BaseModel):
    is_active: bool


class PermissionEntry(BaseModel):
    module: PermissionModule
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False


class PermissionsUpdate(BaseModel):
    permissions: List[PermissionEntry] = Field(..., min_length=1)


class PermissionResponse(PermissionEntry):
    user_id: str
    updated_at: Optional[datetime] = None
