from typing import Callable, Optional
from fastapi import Depends, Header, Request

from storefront.accounts.models import UserRole, PermissionModule, PermissionAction
from storefront.shared.utils import (
    verify_token, str_to_oid, serialize_doc,
    UnauthorizedException, ForbiddenException,
)


def service(name: str) -> Callable:
    """Dependency returning the service instance built by ``create_app``."""
    def _get(request: Request):
        return getattr(request.app.state, name)
    return _get


async def get_token_payload(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise UnauthorizedException("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedException("Invalid authentication credentials")

    payload = verify_token(token, request.app.state.settings)
    if await request.app.state.auth.is_revoked(payload.get("jti")):
        raise UnauthorizedException("Token has been revoked")
    return payload


async def get_current_user(request: Request, payload: dict = Depends(get_token_payload)) -> dict:
    user = await request.app.state.db.users.find_one({"_id": str_to_oid(payload["sub"])})
    if not user:
        raise UnauthorizedException("User no longer exists")
    if not user.get("is_active", True):
        raise UnauthorizedException("Account is deactivated")

    request.state.user_id = str(user["_id"])
    return serialize_doc(user)


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] not in (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value):
        raise ForbiddenException("Admin access required")
    return user


async def require_super_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] != UserRole.SUPER_ADMIN.value:
        raise ForbiddenException("Super admin access required")
    return user


def require_permission(module: PermissionModule, action: PermissionAction) -> Callable:
    async def _check(request: Request, user: dict = Depends(require_admin)) -> dict:
        allowed = await request.app.state.admin.has_permission(user, module.value, action)
        if not allowed:
            raise ForbiddenException(f"Missing {action.value} permission on {module.value}")
        return user
    return _check
