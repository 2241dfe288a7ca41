from datetime import datetime, timedelta, timezone
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
from bson import ObjectId
from bson.errors import InvalidId
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB: str = "storefront"
    # Checkout writes run in a transaction; needs a replica set or sharded cluster
    MONGO_TRANSACTIONS: bool = True

    SECRET_KEY: str = "secret"
    REFRESH_SECRET_KEY: str = "refresh_secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    SUPER_ADMIN_EMAIL: Optional[str] = None
    SUPER_ADMIN_PASSWORD: Optional[str] = None

    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""

    SHIPROCKET_API_URL: str = "https://apiv2.shiprocket.in/v1/external"
    SHIPROCKET_EMAIL: str = ""
    SHIPROCKET_PASSWORD: str = ""
    SHIPROCKET_WEBHOOK_TOKEN: str = ""

    EMAIL_API_URL: Optional[str] = None
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "orders@storefront.local"
    ADMIN_EMAIL: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    RATE_LIMIT_ENABLED: bool = True

    # Money settings are in paise, rates in basis points
    GST_RATE_BPS: int = 1800
    FREE_SHIPPING_THRESHOLD: int = 100000
    DEFAULT_SHIPPING_FEE: int = 5000
    COD_LIMIT: int = 200000
    ORDER_CANCELLATION_WINDOW_HOURS: int = 24
    RETURN_WINDOW_HOURS: int = 24
    RETURN_SHIPPING_FEE: int = 5000

    SHIPMENT_CRON_ENABLED: bool = True
    SHIPMENT_CRON_INTERVAL_SECONDS: int = 300
    SHIPMENT_BATCH_SIZE: int = 20
    SHIPMENT_MAX_ATTEMPTS: int = 0
    SHIPMENT_AUTO_PICKUP: bool = True
    SHIPMENT_CLAIM_TIMEOUT_SECONDS: int = 600

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def utcnow() -> datetime:
    """Naive UTC timestamp, matching what MongoDB hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def str_to_oid(id: str) -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException("Invalid ID format")

def serialize_doc(doc: dict) -> dict:
    doc["id"] = str(doc["_id"])
    return doc

# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

TOKEN_ERRORS = {
    "access": "Could not validate credentials",
    "refresh": "Invalid refresh token",
}

def _encode_token(data: dict, token_type: str, lifetime: timedelta, secret: str, config: Settings) -> str:
    claims = {"jti": uuid.uuid4().hex, **data, "exp": utcnow() + lifetime, "type": token_type}
    return jwt.encode(claims, secret, algorithm=config.ALGORITHM)

def _decode_token(token: str, token_type: str, secret: str, config: Settings) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[config.ALGORITHM])
    except JWTError:
        raise UnauthorizedException(TOKEN_ERRORS[token_type])
    # An access token must never pass as a refresh token or the other way round
    if payload.get("type") != token_type:
        raise UnauthorizedException(TOKEN_ERRORS[token_type])
    return payload

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, config: Settings = settings) -> str:
    lifetime = expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode_token(data, "access", lifetime, config.SECRET_KEY, config)

def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None, config: Settings = settings) -> str:
    lifetime = expires_delta or timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode_token(data, "refresh", lifetime, config.REFRESH_SECRET_KEY, config)

def verify_token(token: str, config: Settings = settings) -> dict:
    return _decode_token(token, "access", config.SECRET_KEY, config)

def verify_refresh_token(token: str, config: Settings = settings) -> dict:
    return _decode_token(token, "refresh", config.REFRESH_SECRET_KEY, config)

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid input"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class BusinessRuleException(AppException):
    def __init__(self, detail: str = "Request cannot be completed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ConflictException(AppException):
    def __init__(self, detail: str = "Resource already exists"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class ServiceUnavailableException(AppException):
    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
