import logging
from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from storefront.accounts.models import UserDB, PermissionDB, UserRole, PermissionAction
from storefront.accounts.schemas import UserRegister, AdminCreate, PermissionEntry
from storefront.shared.utils import (
    Settings, get_password_hash, verify_password, create_access_token,
    create_refresh_token, verify_refresh_token, str_to_oid, serialize_doc, utcnow,
    UnauthorizedException, NotFoundException, ConflictException, ForbiddenException,
    ValidationException,
)

logger = logging.getLogger("storefront.accounts")


def _exp_to_datetime(exp: int) -> datetime:
    return datetime.fromtimestamp(exp, timezone.utc).replace(tzinfo=None)


class AuthService:
    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings):
        self.db = db
        self.settings = settings

    async def register(self, data: UserRegister, role: UserRole = UserRole.USER) -> dict:
        existing_user = await self.db.users.find_one({"email": data.email.lower()})
        if existing_user:
            raise ConflictException("Email already registered")

        user_db = UserDB(
            email=data.email.lower(),
            password_hash=get_password_hash(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
            role=role,
        )
        try:
            result = await self.db.users.insert_one(user_db.model_dump(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("Email already registered")
        logger.info(f"Registered {role.value} account", extra={"user_id": str(result.inserted_id)})
        return serialize_doc(await self.db.users.find_one({"_id": result.inserted_id}))

    def _issue_tokens(self, user_id: str, role: str) -> dict:
        claims = {"sub": user_id, "role": role}
        return {
            "access_token": create_access_token(claims, config=self.settings),
            "refresh_token": create_refresh_token(claims, config=self.settings),
            "token_type": "bearer",
        }

    async def login(self, email: str, password: str) -> dict:
        user = await self.db.users.find_one({"email": email.lower()})
        if not user or not verify_password(password, user["password_hash"]):
            raise UnauthorizedException("Incorrect email or password")
        if not user.get("is_active", True):
            raise UnauthorizedException("Account is deactivated")
        return self._issue_tokens(str(user["_id"]), user["role"])

    async def refresh(self, refresh_token: str) -> dict:
        payload = verify_refresh_token(refresh_token, self.settings)
        if await self.is_revoked(payload.get("jti")):
            raise UnauthorizedException("Refresh token has been revoked")

        user = await self.get_user(payload["sub"])
        if not user.get("is_active", True):
            raise UnauthorizedException("Account is deactivated")

        # Rotate: the presented refresh token cannot be used again
        await self.revoke(payload)
        return self._issue_tokens(user["id"], user["role"])

    async def logout(self, access_payload: dict, refresh_token: Optional[str] = None):
        await self.revoke(access_payload)
        if refresh_token:
            await self.revoke(verify_refresh_token(refresh_token, self.settings))

    async def revoke(self, payload: dict):
        if "jti" not in payload:
            return
        await self.db.revoked_tokens.update_one(
            {"jti": payload["jti"]},
            {"$setOnInsert": {"jti": payload["jti"], "exp": _exp_to_datetime(payload["exp"])}},
            upsert=True,
        )

    async def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        return await self.db.revoked_tokens.find_one({"jti": jti}) is not None

    async def get_user(self, user_id: str) -> dict:
        user = await self.db.users.find_one({"_id": str_to_oid(user_id)})
        if not user:
            raise NotFoundException("User not found")
        return serialize_doc(user)

    async def ensure_super_admin(self):
        email = self.settings.SUPER_ADMIN_EMAIL
        password = self.settings.SUPER_ADMIN_PASSWORD
        if not email or not password:
            return
        if await self.db.users.find_one({"email": email.lower()}):
            return
        user_db = UserDB(
            email=email.lower(),
            password_hash=get_password_hash(password),
            first_name="Super",
            last_name="Admin",
            role=UserRole.SUPER_ADMIN,
        )
        await self.db.users.insert_one(user_db.model_dump(by_alias=True, exclude={"id"}))
        logger.info("Seeded super admin account")


class AdminService:
    def __init__(self, db: AsyncIOMotorDatabase, auth: AuthService):
        self.db = db
        self.auth = auth

    async def create_admin(self, data: AdminCreate) -> dict:
        if data.role == UserRole.USER:
            raise ValidationException("Use registration for customer accounts")
        return await self.auth.register(data, role=data.role)

    async def list_users(self, role: Optional[UserRole] = None, skip: int = 0, limit: int = 20) -> List[dict]:
        query = {}
        if role:
            query["role"] = role.value
        cursor = self.db.users.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return [serialize_doc(doc) async for doc in cursor]

    async def _update_user(self, actor: dict, user_id: str, changes: dict) -> dict:
        if actor["id"] == user_id:
            raise ForbiddenException("You cannot change your own account")
        target = await self.auth.get_user(user_id)
        if target["role"] == UserRole.SUPER_ADMIN.value:
            raise ForbiddenException("Super admin accounts cannot be modified")
        changes["updated_at"] = utcnow()
        await self.db.users.update_one({"_id": target["_id"]}, {"$set": changes})
        return await self.auth.get_user(user_id)

    async def update_role(self, actor: dict, user_id: str, role: UserRole) -> dict:
        user = await self._update_user(actor, user_id, {"role": role.value})
        if role == UserRole.USER:
            await self.db.permissions.delete_many({"user_id": user_id})
        return user

    async def update_status(self, actor: dict, user_id: str, is_active: bool) -> dict:
        return await self._update_user(actor, user_id, {"is_active": is_active})

    async def set_permissions(self, actor: dict, user_id: str, entries: List[PermissionEntry]) -> List[dict]:
        target = await self.auth.get_user(user_id)
        if target["role"] != UserRole.ADMIN.value:
            raise ValidationException("Permissions can only be assigned to admin accounts")

        for entry in entries:
            permission = PermissionDB(
                user_id=user_id,
                granted_by=actor["id"],
                **entry.model_dump(),
            )
            doc = permission.model_dump(by_alias=True, exclude={"id"})
            await self.db.permissions.update_one(
                {"user_id": user_id, "module": doc["module"]},
                {"$set": doc},
                upsert=True,
            )
        return await self.get_permissions(user_id)

    async def get_permissions(self, user_id: str) -> List[dict]:
        cursor = self.db.permissions.find({"user_id": user_id}).sort("module", 1)
        return [doc async for doc in cursor]

    async def has_permission(self, user: dict, module: str, action: PermissionAction) -> bool:
        role = user.get("role")
        if role == UserRole.SUPER_ADMIN.value:
            return True
        if role != UserRole.ADMIN.value:
            return False
        permission = await self.db.permissions.find_one({"user_id": user["id"], "module": module})
        if not permission:
            return False
        return bool(permission.get(f"can_{action.value}", False))
