from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request

from storefront.accounts.models import UserRole
from storefront.accounts.schemas import (
    UserRegister, UserLogin, Token, RefreshTokenRequest, UserResponse, AdminCreate,
    RoleUpdate, StatusUpdate, PermissionsUpdate, PermissionResponse,
)
from storefront.accounts.service import AuthService, AdminService
from storefront.dependencies import service, get_current_user, get_token_payload, require_super_admin
from storefront.shared.security_config import limiter, REGISTER_RATE, LOGIN_RATE
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/auth", tags=["auth"])
admin_router = APIRouter(prefix="/admin/users", tags=["admin"])


@router.post("/register", response_model=SuccessResponse[UserResponse], status_code=201)
@limiter.limit(REGISTER_RATE)
async def register(request: Request, data: UserRegister, auth: AuthService = Depends(service("auth"))):
    user = await auth.register(data)
    return SuccessResponse(data=UserResponse(**user), message="User registered successfully")


@router.post("/login", response_model=SuccessResponse[Token])
@limiter.limit(LOGIN_RATE)
async def login(request: Request, credentials: UserLogin, auth: AuthService = Depends(service("auth"))):
    tokens = await auth.login(credentials.email, credentials.password)
    return SuccessResponse(data=Token(**tokens), message="Login successful")


@router.post("/refresh", response_model=SuccessResponse[Token])
async def refresh(data: RefreshTokenRequest, auth: AuthService = Depends(service("auth"))):
    tokens = await auth.refresh(data.refresh_token)
    return SuccessResponse(data=Token(**tokens))


@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(
    data: Optional[RefreshTokenRequest] = None,
    payload: dict = Depends(get_token_payload),
    auth: AuthService = Depends(service("auth")),
):
    await auth.logout(payload, data.refresh_token if data else None)
    return SuccessResponse(message="Logged out successfully")


@router.get("/me", response_model=SuccessResponse[UserResponse])
async def me(user: dict = Depends(get_current_user)):
    return SuccessResponse(data=UserResponse(**user))


# --- Admin account management (super admin only) ---

@admin_router.post("", response_model=SuccessResponse[UserResponse], status_code=201)
async def create_admin(
    data: AdminCreate,
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    user = await admin.create_admin(data)
    return SuccessResponse(data=UserResponse(**user), message="Admin created successfully")


@admin_router.get("", response_model=SuccessResponse[List[UserResponse]])
async def list_users(
    role: Optional[UserRole] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    users = await admin.list_users(role, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[UserResponse(**u) for u in users])


@admin_router.put("/{user_id}/role", response_model=SuccessResponse[UserResponse])
async def update_role(
    user_id: str,
    data: RoleUpdate,
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    user = await admin.update_role(actor, user_id, data.role)
    return SuccessResponse(data=UserResponse(**user), message="Role updated")


@admin_router.put("/{user_id}/status", response_model=SuccessResponse[UserResponse])
async def update_status(
    user_id: str,
    data: StatusUpdate,
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    user = await admin.update_status(actor, user_id, data.is_active)
    message = "Account activated" if data.is_active else "Account deactivated"
    return SuccessResponse(data=UserResponse(**user), message=message)


@admin_router.put("/{user_id}/permissions", response_model=SuccessResponse[List[PermissionResponse]])
async def set_permissions(
    user_id: str,
    data: PermissionsUpdate,
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    permissions = await admin.set_permissions(actor, user_id, data.permissions)
    return SuccessResponse(data=[PermissionResponse(**p) for p in permissions], message="Permissions updated")


@admin_router.get("/{user_id}/permissions", response_model=SuccessResponse[List[PermissionResponse]])
async def get_permissions(
    user_id: str,
    actor: dict = Depends(require_super_admin),
    admin: AdminService = Depends(service("admin")),
):
    permissions = await admin.get_permissions(user_id)
    return SuccessResponse(data=[PermissionResponse(**p) for p in permissions])
