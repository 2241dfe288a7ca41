"""Pytest fixtures for storefront tests."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from storefront.accounts.models import UserRole, PermissionDB
from storefront.accounts.schemas import UserRegister
from storefront.addresses.schemas import AddressCreate
from storefront.catalog.schemas import ProductCreate
from storefront.coupons.schemas import CouponCreate
from storefront.inventory.models import AdjustmentReason
from storefront.inventory.schemas import WarehouseCreate
from storefront.main import create_app, create_indexes
from storefront.notifications.email import EmailService
from storefront.orders.schemas import OrderCreate, OrderLine
from storefront.payments.gateway import PaymentGateway, GatewayError
from storefront.shared.security_config import compute_signature
from storefront.shared.utils import Settings, create_access_token, str_to_oid, utcnow
from storefront.shipping.carrier import CarrierClient, CarrierError, CourierOption

PASSWORD = "Secret123"


def run(coro):
    """Drive one service coroutine to completion."""
    return asyncio.run(coro)


class FakeGateway(PaymentGateway):
    """Payment gateway that keeps every call in memory."""

    def __init__(self, settings: Settings):
        super().__init__(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_WEBHOOK_SECRET)
        self.orders = []
        self.refunds = []
        self.fail_orders = False
        self.fail_refunds = False
        self.fetch_down = False
        self.remote_payments = {}

    async def create_order(self, amount, receipt, notes=None):
        if self.fail_orders:
            raise GatewayError("Payment gateway unavailable")
        order = {"id": f"order_{len(self.orders) + 1:04d}", "amount": amount, "currency": "INR", "receipt": receipt}
        self.orders.append(order)
        return order

    async def fetch_payment(self, gateway_payment_id):
        if self.fetch_down:
            raise GatewayError("Payment gateway unavailable")
        return self.remote_payments.get(gateway_payment_id, {"id": gateway_payment_id, "status": "captured", "method": "card"})

    async def refund(self, gateway_payment_id, amount, notes=None):
        if self.fail_refunds:
            raise GatewayError("Refund rejected by gateway")
        refund = {"id": f"rfnd_{len(self.refunds) + 1:04d}", "payment_id": gateway_payment_id, "amount": amount}
        self.refunds.append(refund)
        return refund


class FakeCarrier(CarrierClient):
    """Courier aggregator with two couriers and switchable failures."""

    def __init__(self):
        self.options = [
            CourierOption(courier_company_id=1, courier_name="Delhivery", freight_charge=6000, estimated_delivery_days=5),
            CourierOption(courier_company_id=2, courier_name="BlueDart", freight_charge=9000, estimated_delivery_days=2),
        ]
        self.unserviceable = set()
        self.fail_orders = set()
        self.serviceability_down = False
        self.fail_returns = False
        self.tracking_down = False
        self.fail_cancels = False
        self.created = []
        self.cancelled = []
        self.returns = []
        self.pickups = []

    async def check_serviceability(self, pickup_pincode, delivery_pincode, weight, cod=False):
        if self.serviceability_down:
            raise CarrierError("Courier service unavailable")
        if delivery_pincode in self.unserviceable:
            return []
        return list(self.options)

    async def create_order(self, payload):
        if payload["order_id"] in self.fail_orders:
            raise CarrierError(f"Courier rejected order {payload['order_id']}")
        self.created.append(payload)
        number = len(self.created)
        return {"order_id": f"SR{number}", "shipment_id": f"SH{number}"}

    async def assign_awb(self, shipment_id, courier_id=None):
        return {"awb_code": f"AWB-{shipment_id}", "courier_name": "Delhivery", "courier_company_id": courier_id or 1}

    async def generate_pickup(self, shipment_id):
        self.pickups.append(shipment_id)
        return {"pickup_scheduled_date": "2026-10-20 10:00:00", "pickup_token_number": f"PT-{shipment_id}"}

    async def track(self, awb_code):
        if self.tracking_down:
            raise CarrierError("Tracking unavailable")
        return {"awb_code": awb_code, "current_status": "IN TRANSIT"}

    async def cancel_orders(self, carrier_order_ids):
        if self.fail_cancels:
            raise CarrierError("Courier cancellation failed")
        self.cancelled.extend(carrier_order_ids)
        return {"status": 200}

    async def create_return_order(self, payload):
        if self.fail_returns:
            raise CarrierError("Reverse pickup not available")
        self.returns.append(payload)
        return {"order_id": f"RSR{len(self.returns)}", "shipment_id": f"RSH{len(self.returns)}"}


class FakeMailer(EmailService):
    """Email service that records messages instead of sending them."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.sent = []

    async def send(self, to, subject, html):
        if not to:
            return False
        self.sent.append({"to": to, "subject": subject, "html": html})
        return True

    def subjects(self, to=None):
        return [m["subject"] for m in self.sent if to is None or m["to"] == to]


class Seeder:
    """Creates test data through the application's own services."""

    def __init__(self, app):
        self.app = app
        self.state = app.state
        self.db = app.state.db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def user(self, email=None, role=UserRole.USER, permissions=None):
        email = email or f"shopper{self._next()}@shopper.io"
        data = UserRegister(email=email, password=PASSWORD, first_name="Asha", last_name="Rao", phone="9876543210")
        user = run(self.state.auth.register(data, role=role))
        for module, actions in (permissions or {}).items():
            row = PermissionDB(user_id=user["id"], module=module, **{f"can_{a.value}": True for a in actions})
            run(self.db.permissions.insert_one(row.model_dump(by_alias=True, exclude={"id"})))
        return user

    def headers(self, user) -> dict:
        token = create_access_token({"sub": user["id"], "role": user["role"]}, config=self.state.settings)
        return {"Authorization": f"Bearer {token}"}

    def warehouse(self, pincode="110001", default=True):
        number = self._next()
        data = WarehouseCreate(
            name=f"Warehouse {number}",
            code=f"WH{number}",
            address_line1="12 Industrial Estate",
            city="New Delhi",
            state="Delhi",
            pincode=pincode,
            contact_person="Ravi Kumar",
            phone="9811122233",
            is_default_pickup=default,
        )
        return run(self.state.warehouses.create(data))

    def product(self, price="500", name=None, **extra):
        number = self._next()
        data = ProductCreate(name=name or f"Kurta {number}", sku=f"SKU-{number}", price=Decimal(price), **extra)
        return run(self.state.products.create(data))

    def stock(self, product, warehouse, quantity):
        return run(self.state.stock.adjust(
            product["id"], None, warehouse["id"], quantity, AdjustmentReason.RESTOCKING,
        ))

    def address(self, user, pincode="400001"):
        data = AddressCreate(
            full_name="Asha Rao",
            phone="9876543210",
            line1="4 Marine Drive",
            city="Mumbai",
            state="Maharashtra",
            pincode=pincode,
        )
        return run(self.state.addresses.create(user["id"], data))

    def coupon(self, code="SAVE10", percent="10", min_order="500", max_usage=None, per_user_limit=None, **extra):
        now = utcnow()
        data = CouponCreate(
            code=code,
            discount_type="percentage",
            discount_value=Decimal(percent),
            min_order_value=Decimal(min_order),
            max_usage=max_usage,
            per_user_limit=per_user_limit,
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=30),
            **extra,
        )
        return run(self.state.coupons.create(data))

    def stock_level(self, product, warehouse) -> int:
        return run(self.state.stock.available(product["id"], None, warehouse["id"]))

    def order(self, store, quantity=1, payment_method="razorpay", **extra):
        data = OrderCreate(
            items=[OrderLine(product_id=store["product"]["id"], quantity=quantity)],
            shipping_address_id=store["address"]["id"],
            payment_method=payment_method,
            **extra,
        )
        return run(self.state.orders.create(store["shopper"], data))

    def pay(self, user, checkout, payment_id="pay_0001"):
        gateway_order_id = checkout["payment"]["gateway_order_id"]
        signature = sign_payment(gateway_order_id, payment_id, self.state.settings)
        return run(self.state.payments.verify_callback(user, gateway_order_id, payment_id, signature))

    def set_order(self, order_id, **changes):
        run(self.db.orders.update_one({"_id": str_to_oid(order_id)}, {"$set": changes}))

    def get_order(self, order_id) -> dict:
        return run(self.db.orders.find_one({"_id": str_to_oid(order_id)}))

    def get_payment(self, order_id) -> dict:
        return run(self.db.payments.find_one({"order_id": order_id}))


def sign_payment(gateway_order_id, payment_id, settings) -> str:
    return compute_signature(f"{gateway_order_id}|{payment_id}".encode(), settings.RAZORPAY_KEY_SECRET)


@pytest.fixture
def settings():
    return Settings(
        MONGO_DB="storefront_test",
        SECRET_KEY="test-secret-key",
        REFRESH_SECRET_KEY="test-refresh-secret-key",
        SUPER_ADMIN_EMAIL=None,
        SUPER_ADMIN_PASSWORD=None,
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET="rzp_test_secret",
        RAZORPAY_WEBHOOK_SECRET="whsec_test",
        SHIPROCKET_WEBHOOK_TOKEN="sr_hook_token",
        MONGO_TRANSACTIONS=False,
        EMAIL_API_URL=None,
        ADMIN_EMAIL=None,
        RATE_LIMIT_ENABLED=False,
        SHIPMENT_CRON_ENABLED=False,
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def mailer(settings):
    return FakeMailer(settings)


@pytest.fixture
def app(settings, db, gateway, carrier, mailer):
    application = create_app(settings, db=db, gateway=gateway, carrier=carrier, mailer=mailer)
    run(create_indexes(db))
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seed(app):
    return Seeder(app)


@pytest.fixture
def store(seed):
    """A shopper with an address, a pickup warehouse and one stocked product."""
    warehouse = seed.warehouse()
    product = seed.product(price="500")
    seed.stock(product, warehouse, 10)
    shopper = seed.user()
    address = seed.address(shopper)
    return {"warehouse": warehouse, "product": product, "shopper": shopper, "address": address}
