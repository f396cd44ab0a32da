"""Settings and catalog access used by the order lifecycle.

Stock is only ever changed through single-row conditional UPDATE statements,
so concurrent checkouts cannot lose updates or drive a size below zero.
``Product.total_stock`` is recomputed from the size rows in the same
transaction after every stock mutation.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import NotFoundError, ValidationError
from storefront.models import (
    SETTINGS_KEY,
    Product,
    ProductSize,
    ReservationStatus,
    Settings,
    StockReservation,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "gst_percentage": Decimal("18"),
    "gst_enabled": True,
    "shipping_fee": Decimal("69"),
    "shipping_enabled": True,
    "free_shipping_above": Decimal("999"),
}

SETTINGS_FIELDS = tuple(DEFAULT_SETTINGS)


@dataclass(frozen=True)
class PricingSettings:
    gst_percentage: Decimal
    gst_enabled: bool
    shipping_fee: Decimal
    shipping_enabled: bool
    free_shipping_above: Decimal


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: str
    name: str
    price: Decimal
    discount_price: Optional[Decimal]
    available_stock: int
    is_active: bool
    has_size: bool

    @property
    def unit_price(self) -> Decimal:
        if self.discount_price is not None and self.discount_price < self.price:
            return self.discount_price
        return self.price


def _to_pricing(row: Settings) -> PricingSettings:
    return PricingSettings(
        gst_percentage=Decimal(row.gst_percentage),
        gst_enabled=bool(row.gst_enabled),
        shipping_fee=Decimal(row.shipping_fee),
        shipping_enabled=bool(row.shipping_enabled),
        free_shipping_above=Decimal(row.free_shipping_above),
    )


async def get_settings_row(session: AsyncSession) -> Settings:
    """Return the singleton settings row, creating it with defaults on first use.

    Must be called before the session holds other pending writes: creating the
    row commits, and losing the insert race rolls the session back.
    """
    row = await session.get(Settings, SETTINGS_KEY)
    if row is not None:
        return row

    session.add(Settings(key=SETTINGS_KEY, **DEFAULT_SETTINGS))
    try:
        await session.commit()
        logger.info("Created default pricing settings")
    except IntegrityError:
        # Another request inserted the row first.
        await session.rollback()
    return await session.get(Settings, SETTINGS_KEY, populate_existing=True)


async def get_active_settings(session: AsyncSession) -> PricingSettings:
    return _to_pricing(await get_settings_row(session))


async def update_settings(session: AsyncSession, changes: dict) -> Settings:
    unknown = set(changes) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown settings fields: {', '.join(sorted(unknown))}")

    row = await get_settings_row(session)
    for field, value in changes.items():
        if value is None:
            continue
        setattr(row, field, value)
    row.updated_at = utcnow()
    await session.commit()
    await session.refresh(row)
    logger.info("Pricing settings updated: %s", {k: v for k, v in changes.items() if v is not None})
    return row


async def get_product_price_and_stock(session: AsyncSession, product_id: str, size: str) -> ProductSnapshot:
    result = await session.execute(
        select(Product.name, Product.price, Product.discount_price, Product.is_active).where(Product.id == product_id)
    )
    product = result.one_or_none()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    stock = (
        await session.execute(
            select(ProductSize.stock).where(ProductSize.product_id == product_id, ProductSize.size == size)
        )
    ).scalar_one_or_none()

    return ProductSnapshot(
        product_id=product_id,
        name=product.name,
        price=Decimal(product.price),
        discount_price=Decimal(product.discount_price) if product.discount_price is not None else None,
        available_stock=stock or 0,
        is_active=bool(product.is_active),
        has_size=stock is not None,
    )


async def refresh_total_stock(session: AsyncSession, product_id: str):
    total = (
        select(func.coalesce(func.sum(ProductSize.stock), 0))
        .where(ProductSize.product_id == product_id)
        .scalar_subquery()
    )
    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(total_stock=total, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def reserve_stock(session: AsyncSession, order_id: str, product_id: str, size: str, quantity: int) -> bool:
    """Decrement stock for one line and record the reservation.

    Returns False without touching anything when the size does not hold
    ``quantity`` units. The caller owns the transaction.
    """
    result = await session.execute(
        update(ProductSize)
        .where(
            ProductSize.product_id == product_id,
            ProductSize.size == size,
            ProductSize.stock >= quantity,
        )
        .values(stock=ProductSize.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    session.add(StockReservation(order_id=order_id, product_id=product_id, size=size, quantity=quantity))
    await refresh_total_stock(session, product_id)
    return True


async def commit_reservations(session: AsyncSession, order_id: str) -> int:
    result = await session.execute(
        update(StockReservation)
        .where(StockReservation.order_id == order_id, StockReservation.status == ReservationStatus.RESERVED)
        .values(status=ReservationStatus.COMMITTED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def release_reservations(session: AsyncSession, order_id: str) -> int:
    """Put the order's reserved units back on the shelf.

    Each reservation row flips to ``released`` through a conditional update
    before its stock is restored, so a second call restores nothing.
    Returns the number of units restored.
    """
    result = await session.execute(
        select(StockReservation.id, StockReservation.product_id, StockReservation.size, StockReservation.quantity).where(
            StockReservation.order_id == order_id,
            StockReservation.status != ReservationStatus.RELEASED,
        )
    )
    reservations = result.all()

    restored = 0
    touched = set()
    for res in reservations:
        flipped = await session.execute(
            update(StockReservation)
            .where(StockReservation.id == res.id, StockReservation.status != ReservationStatus.RELEASED)
            .values(status=ReservationStatus.RELEASED)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            continue

        put_back = await session.execute(
            update(ProductSize)
            .where(ProductSize.product_id == res.product_id, ProductSize.size == res.size)
            .values(stock=ProductSize.stock + res.quantity)
            .execution_options(synchronize_session=False)
        )
        if put_back.rowcount != 1:
            logger.warning(
                "Size %s of product %s no longer exists; %d units from order %s not restored",
                res.size, res.product_id, res.quantity, order_id,
            )
            continue
        restored += res.quantity
        touched.add(res.product_id)

    for product_id in touched:
        await refresh_total_stock(session, product_id)
    return restored


async def set_size_stock(session: AsyncSession, product_id: str, size: str, stock: int) -> Product:
    """Administrative stock write for one size; creates the size when missing."""
    if stock < 0:
        raise ValidationError("Stock cannot be negative")

    product = await session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    result = await session.execute(
        update(ProductSize)
        .where(ProductSize.product_id == product_id, ProductSize.size == size)
        .values(stock=stock)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(ProductSize(product_id=product_id, size=size, stock=stock))
        await session.flush()

    await refresh_total_stock(session, product_id)
    await session.commit()
    return await session.get(Product, product_id, populate_existing=True)
