import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_SECRET_KEY", "test-gateway-secret")
os.environ.setdefault("RECONCILE_DELAY_SECONDS", "0")

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.catalog import refresh_total_stock
from storefront.database import Base
from storefront.errors import GatewayError
from storefront.gateway import GatewayPayment, compute_signature
from storefront.lifecycle import CartLine
from storefront.models import SETTINGS_KEY, Product, ProductSize, Settings

GATEWAY_SECRET = "test-gateway-secret"

ADDRESS = {
    "full_name": "Asha Rao",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "country": "India",
    "phone": "9876543210",
}


class FakeGateway:
    """In-memory stand-in for the payment provider."""

    def __init__(self, order_ids=None):
        self.next_ids = list(order_ids or [])
        self.created = []
        self.payments = {}
        self.payment_by_id = {}
        self.fetch_errors = {}
        self.fail_create = None

    async def create_payment_order(self, amount, currency, receipt, notes):
        if self.fail_create is not None:
            raise self.fail_create
        gateway_order_id = self.next_ids.pop(0) if self.next_ids else f"order_{len(self.created) + 1:04d}"
        self.created.append({"id": gateway_order_id, "amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return gateway_order_id

    async def fetch_payments(self, gateway_order_id):
        if gateway_order_id in self.fetch_errors:
            raise self.fetch_errors[gateway_order_id]
        return list(self.payments.get(gateway_order_id, []))

    async def fetch_payment(self, payment_id):
        if payment_id not in self.payment_by_id:
            raise GatewayError(f"The id provided does not exist: {payment_id}")
        return self.payment_by_id[payment_id]

    def verify_signature(self, gateway_order_id, payment_id, signature):
        return compute_signature(GATEWAY_SECRET, gateway_order_id, payment_id) == signature

    def add_payment(self, gateway_order_id, payment_id, status="captured", amount=Decimal("0"), method="upi"):
        payment = GatewayPayment(id=payment_id, status=status, amount=Decimal(amount), method=method)
        self.payments.setdefault(gateway_order_id, []).append(payment)
        self.payment_by_id[payment_id] = payment
        return payment


def sign(gateway_order_id, payment_id):
    return compute_signature(GATEWAY_SECRET, gateway_order_id, payment_id)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


async def add_product(session, name="Cosmic Tee", price="1999", sizes=None, discount_price=None, is_active=True):
    product = Product(
        name=name,
        slug=name.lower().replace(" ", "-"),
        price=Decimal(price),
        discount_price=Decimal(discount_price) if discount_price is not None else None,
        is_active=is_active,
        sizes=[ProductSize(size=size, stock=stock) for size, stock in (sizes or {"M": 10}).items()],
    )
    session.add(product)
    await session.flush()
    await refresh_total_stock(session, product.id)
    await session.commit()
    return product.id


async def configure_pricing(session, **values):
    if await session.get(Settings, SETTINGS_KEY) is None:
        session.add(Settings(key=SETTINGS_KEY, **{**DEFAULTS, **values}))
    else:
        await session.execute(update(Settings).where(Settings.key == SETTINGS_KEY).values(**values))
    await session.commit()


DEFAULTS = {
    "gst_percentage": Decimal("18"),
    "gst_enabled": True,
    "shipping_fee": Decimal("69"),
    "shipping_enabled": True,
    "free_shipping_above": Decimal("999"),
}


async def stock_of(session_factory, product_id, size):
    async with session_factory() as session:
        return (
            await session.execute(
                select(ProductSize.stock).where(ProductSize.product_id == product_id, ProductSize.size == size)
            )
        ).scalar_one()


async def total_stock_of(session_factory, product_id):
    async with session_factory() as session:
        return (await session.execute(select(Product.total_stock).where(Product.id == product_id))).scalar_one()


def cart(product_id, size="M", quantity=1):
    return [CartLine(product_id=product_id, size=size, quantity=quantity)]
