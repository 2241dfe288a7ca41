import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront import __version__
from storefront.accounts.routes import router as auth_router, admin_router as users_admin_router
from storefront.accounts.service import AuthService, AdminService
from storefront.addresses.routes import router as addresses_router
from storefront.addresses.service import AddressService
from storefront.catalog.routes import categories_router, products_router, banners_router
from storefront.catalog.service import CategoryService, ProductService, BannerService
from storefront.consultations.routes import router as consultations_router, admin_router as consultations_admin_router
from storefront.consultations.service import ConsultationService
from storefront.coupons.routes import router as coupons_router
from storefront.coupons.service import CouponService
from storefront.inventory.routes import warehouses_router, stock_router
from storefront.inventory.service import WarehouseService, StockService
from storefront.notifications.email import EmailService
from storefront.orders.routes import router as orders_router, admin_router as orders_admin_router
from storefront.orders.service import OrderService
from storefront.payments.gateway import PaymentGateway, RazorpayGateway
from storefront.payments.routes import webhooks_router
from storefront.payments.service import PaymentService
from storefront.returns.routes import router as returns_router, admin_router as returns_admin_router
from storefront.returns.service import ReturnService
from storefront.shared.logging_config import setup_logging, RequestLoggingMiddleware
from storefront.shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from storefront.shared.utils import (
    Settings, settings as default_settings, get_db_client, utcnow,
    ErrorResponse, HealthResponse,
)
from storefront.shipping.calculator import ShippingCalculator
from storefront.shipping.carrier import CarrierClient, ShiprocketClient
from storefront.shipping.routes import shipping_router, shipments_router, carrier_webhooks_router
from storefront.shipping.scheduler import ShipmentScheduler
from storefront.shipping.tracking import CarrierStatusService
from storefront.shopping.routes import cart_router, wishlist_router
from storefront.shopping.service import CartService, WishlistService

API_PREFIX = "/api"

ROUTERS = (
    auth_router, users_admin_router, addresses_router,
    categories_router, products_router, banners_router,
    cart_router, wishlist_router, coupons_router,
    orders_router, orders_admin_router, webhooks_router,
    shipping_router, shipments_router, carrier_webhooks_router, warehouses_router, stock_router,
    returns_router, returns_admin_router,
    consultations_router, consultations_admin_router,
)


async def create_indexes(db: AsyncIOMotorDatabase):
    await db.users.create_index("email", unique=True)
    await db.permissions.create_index([("user_id", ASCENDING), ("module", ASCENDING)], unique=True)
    await db.revoked_tokens.create_index("jti", unique=True)
    await db.revoked_tokens.create_index("exp", expireAfterSeconds=0)
    await db.addresses.create_index("user_id")
    await db.categories.create_index("slug", unique=True)
    await db.products.create_index("slug", unique=True)
    await db.products.create_index("sku", unique=True)
    await db.products.create_index("category_id")
    await db.carts.create_index("user_id", unique=True)
    await db.wishlists.create_index("user_id", unique=True)
    await db.coupons.create_index("code", unique=True)
    await db.coupon_redemptions.create_index([("coupon_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    await db.orders.create_index("order_number", unique=True)
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    await db.orders.create_index([("status", ASCENDING), ("tracking_number", ASCENDING)])
    await db.payments.create_index("order_id", unique=True)
    await db.payments.create_index("gateway_order_id")
    await db.payments.create_index("gateway_payment_id")
    await db.shipments.create_index("order_id", unique=True)
    await db.warehouses.create_index("code", unique=True)
    await db.stock.create_index(
        [("product_id", ASCENDING), ("variant_id", ASCENDING), ("warehouse_id", ASCENDING)], unique=True
    )
    await db.stock_adjustments.create_index("stock_id")
    await db.returns.create_index("return_number", unique=True)
    await db.returns.create_index("order_id")
    await db.consultations.create_index("user_id")


def register_exception_handlers(app: FastAPI, logger: logging.Logger):
    # Registered on Starlette's base class so unknown routes (404, 405) get the same envelope
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(message=str(exc.detail)).model_dump(),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(message="Validation failed", errors=errors).model_dump(),
        )

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=ErrorResponse(message="Resource already exists").model_dump(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(message="Internal server error").model_dump(),
        )


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[AsyncIOMotorDatabase] = None,
    gateway: Optional[PaymentGateway] = None,
    carrier: Optional[CarrierClient] = None,
    mailer: Optional[EmailService] = None,
) -> FastAPI:
    """
    Build the application and every service it uses.

    Collaborators that talk to the outside world can be passed in; anything
    left out is built from ``settings``.
    """
    settings = settings or default_settings
    logger = setup_logging("storefront", settings.LOG_LEVEL)

    app = FastAPI(title="Storefront API", version=__version__)

    setup_rate_limiting(app, enabled=settings.RATE_LIMIT_ENABLED)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware, service_name="storefront")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, logger)

    mongodb_client = None
    if db is None:
        mongodb_client = get_db_client(settings.MONGO_URL)
        db = mongodb_client[settings.MONGO_DB]

    gateway = gateway or RazorpayGateway(settings)
    carrier = carrier or ShiprocketClient(settings)
    mailer = mailer or EmailService(settings)

    auth = AuthService(db, settings)
    categories = CategoryService(db)
    products = ProductService(db, categories)
    carts = CartService(db, products)
    coupons = CouponService(db)
    warehouses = WarehouseService(db)
    stock = StockService(db)
    addresses = AddressService(db)
    calculator = ShippingCalculator(carrier, settings)
    payments = PaymentService(db, gateway, stock, coupons, mailer)

    state = app.state
    state.settings = settings
    state.db = db
    state.gateway = gateway
    state.carrier = carrier
    state.mailer = mailer
    state.auth = auth
    state.admin = AdminService(db, auth)
    state.addresses = addresses
    state.categories = categories
    state.products = products
    state.banners = BannerService(db)
    state.carts = carts
    state.wishlists = WishlistService(db, products)
    state.coupons = coupons
    state.warehouses = warehouses
    state.stock = stock
    state.calculator = calculator
    state.payments = payments
    state.orders = OrderService(
        db, settings, products, addresses, carts, coupons, warehouses, stock,
        calculator, payments, carrier, mailer,
    )
    state.returns = ReturnService(db, settings, stock, warehouses, payments, carrier, mailer)
    state.consultations = ConsultationService(db, products, categories, mailer)
    state.scheduler = ShipmentScheduler(db, carrier, mailer, settings)
    state.carrier_status = CarrierStatusService(db, settings, payments, stock, coupons, mailer)

    for router in ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    @app.on_event("startup")
    async def startup():
        await create_indexes(db)
        await auth.ensure_super_admin()
        if settings.SHIPMENT_CRON_ENABLED:
            state.scheduler.start()
        logger.info("Storefront started")

    @app.on_event("shutdown")
    async def shutdown():
        await state.scheduler.stop()
        await gateway.close()
        await carrier.close()
        if mongodb_client is not None:
            mongodb_client.close()

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        db_status = "disconnected"
        try:
            await db.command("ping")
            db_status = "connected"
        except Exception:
            logger.warning("Health check could not reach the database")

        if db_status != "connected":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service Unhealthy",
            )

        return HealthResponse(
            service="storefront",
            status="healthy",
            timestamp=utcnow(),
            version=__version__,
            database=db_status,
        )

    return app


app = create_app()
