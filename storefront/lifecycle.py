"""Order lifecycle: checkout, payment verification, payment failure and status changes.

Stock is reserved when the order is created, committed when the payment is
applied and released when an unpaid order is failed, expired or cancelled.
Every change to an order's (status, payment_status) pair is a conditional
UPDATE keyed on the pair it expects to find, so the verify endpoint and the
reconciliation job can race on the same order without applying twice.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront import config
from storefront.catalog import (
    PricingSettings,
    commit_reservations,
    get_active_settings,
    get_product_price_and_stock,
    release_reservations,
    reserve_stock,
)
from storefront.errors import (
    AlreadyProcessed,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from storefront.gateway import PaymentGateway
from storefront.messaging import build_event, publish_event
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentRecordStatus,
    PaymentStatus,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Fulfilment states that only a paid order may enter.
REQUIRES_PAYMENT = {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}


@dataclass(frozen=True)
class CartLine:
    product_id: str
    size: str
    quantity: int


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


def compute_totals(subtotal: Decimal, settings: PricingSettings) -> OrderTotals:
    subtotal = Decimal(subtotal).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    tax = Decimal("0.00")
    if settings.gst_enabled:
        tax = (subtotal * settings.gst_percentage / 100).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    shipping = Decimal("0.00")
    if settings.shipping_enabled and subtotal < settings.free_shipping_above:
        shipping = Decimal(settings.shipping_fee).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    return OrderTotals(subtotal=subtotal, tax=tax, shipping=shipping, total=subtotal + tax + shipping)


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def merge_lines(lines: Iterable[CartLine]) -> List[CartLine]:
    merged = {}
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(f"Quantity for product {line.product_id} must be at least 1")
        key = (line.product_id, line.size)
        if key in merged:
            merged[key] = CartLine(line.product_id, line.size, merged[key].quantity + line.quantity)
        else:
            merged[key] = line
    if not merged:
        raise ValidationError("Cart is empty")
    return list(merged.values())


async def load_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


async def create_order(
    session: AsyncSession,
    gateway: PaymentGateway,
    lines: Iterable[CartLine],
    shipping_address: dict,
    user_id: Optional[str] = None,
    currency: str = config.CURRENCY,
) -> Order:
    """Price the cart from the catalog, reserve its stock and open a gateway payment-order.

    Nothing is persisted when a line fails validation. When the gateway call
    fails the order stays persisted as pending and the ``GatewayError`` carries
    its id, so checkout can be retried through ``create_payment_order``.
    """
    merged = merge_lines(lines)
    settings = await get_active_settings(session)

    items = []
    subtotal = Decimal("0")
    for position, line in enumerate(merged):
        try:
            snapshot = await get_product_price_and_stock(session, line.product_id, line.size)
        except NotFoundError:
            raise ValidationError(f"Product {line.product_id} does not exist") from None
        if not snapshot.is_active:
            raise ValidationError(f"{snapshot.name} is no longer available")
        if not snapshot.has_size:
            raise ValidationError(f"{snapshot.name} is not available in size {line.size}")
        if snapshot.available_stock < line.quantity:
            raise ValidationError(f"Insufficient stock for {snapshot.name} (size: {line.size})")

        items.append(
            OrderItem(
                position=position,
                product_id=line.product_id,
                name=snapshot.name,
                price=snapshot.unit_price,
                quantity=line.quantity,
                size=line.size,
            )
        )
        subtotal += snapshot.unit_price * line.quantity

    totals = compute_totals(subtotal, settings)
    order = Order(
        id=new_id(),
        order_number=generate_order_number(),
        user_id=user_id,
        subtotal=totals.subtotal,
        tax=totals.tax,
        shipping=totals.shipping,
        total=totals.total,
        currency=currency,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        shipping_address=dict(shipping_address),
        items=items,
    )
    session.add(order)
    await session.flush()

    # The stock read above is advisory; the conditional decrement is authoritative.
    for item in items:
        name, size = item.name, item.size
        if not await reserve_stock(session, order.id, item.product_id, size, item.quantity):
            await session.rollback()
            raise ValidationError(f"Insufficient stock for {name} (size: {size})")

    await session.commit()
    logger.info("Order %s created: total %s %s, %d lines", order.order_number, order.total, currency, len(items))
    await publish_event("order.created", build_event("OrderCreated", order))

    try:
        return await _attach_gateway_order(session, gateway, order)
    except GatewayError as e:
        logger.warning("Gateway order creation failed for %s: %s", order.order_number, e.message)
        e.details.update(order_id=order.id, order_number=order.order_number)
        raise


async def _attach_gateway_order(session: AsyncSession, gateway: PaymentGateway, order: Order) -> Order:
    gateway_order_id = await gateway.create_payment_order(
        order.total,
        order.currency,
        receipt=order.order_number,
        notes={"orderId": order.id, "orderNumber": order.order_number},
    )
    await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.gateway_order_id.is_(None))
        .values(gateway_order_id=gateway_order_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return await load_order(session, order.id)


async def create_payment_order(session: AsyncSession, gateway: PaymentGateway, order_id: str) -> Order:
    """Open (or return the already opened) gateway payment-order for a pending order."""
    order = await load_order(session, order_id)
    if order.payment_status != PaymentStatus.PENDING or order.status != OrderStatus.PENDING:
        raise InvalidTransitionError(
            f"Order {order.order_number} is {order.status.value}/{order.payment_status.value}; it cannot take a payment"
        )
    if order.gateway_order_id:
        return order
    return await _attach_gateway_order(session, gateway, order)


async def settle_payment(
    session: AsyncSession,
    order: Order,
    payment_id: str,
    signature: Optional[str] = None,
    amount: Optional[Decimal] = None,
    method: Optional[str] = None,
) -> Order:
    """Flip a pending order to paid/processing and commit its stock reservations.

    Raises ``AlreadyProcessed`` when the order is already paid and
    ``InvalidTransitionError`` when it was failed or cancelled meanwhile.
    """
    order_id = order.id
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.PENDING,
            Order.status == OrderStatus.PENDING,
        )
        .values(
            payment_status=PaymentStatus.PAID,
            status=OrderStatus.PROCESSING,
            payment_id=payment_id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        current = await load_order(session, order_id)
        if current.payment_status == PaymentStatus.PAID:
            raise AlreadyProcessed(f"Order {current.order_number} is already paid")
        raise InvalidTransitionError(
            f"Order {current.order_number} is {current.payment_status.value}; payment {payment_id} cannot be applied"
        )

    await commit_reservations(session, order.id)
    session.add(
        Payment(
            order_id=order.id,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=payment_id,
            signature=signature,
            amount=amount if amount is not None else order.total,
            currency=order.currency,
            status=PaymentRecordStatus.COMPLETED,
            method=method,
        )
    )
    await session.commit()

    order = await load_order(session, order.id)
    logger.info("Order %s paid with payment %s", order.order_number, payment_id)
    await publish_event("order.paid", build_event("OrderPaid", order))
    return order


async def cancel_unpaid_order(session: AsyncSession, order: Order, reason: str) -> Order:
    """Fail and cancel a pending order, releasing its reserved stock.

    Raises ``AlreadyProcessed`` when the order was already failed and
    ``InvalidTransitionError`` when it was paid meanwhile.
    """
    order_id = order.id
    result = await session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.PENDING,
            Order.status == OrderStatus.PENDING,
        )
        .values(
            payment_status=PaymentStatus.FAILED,
            status=OrderStatus.CANCELLED,
            cancellation_reason=reason,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        current = await load_order(session, order_id)
        if current.payment_status == PaymentStatus.FAILED:
            raise AlreadyProcessed(f"Order {current.order_number} is already failed")
        raise InvalidTransitionError(
            f"Order {current.order_number} is {current.status.value}/{current.payment_status.value}; it cannot be failed"
        )

    restored = await release_reservations(session, order.id)
    await session.commit()

    order = await load_order(session, order.id)
    logger.info("Order %s cancelled (%s); %d units restored", order.order_number, reason, restored)
    await publish_event("order.cancelled", build_event("OrderCancelled", order))
    return order


async def _record_payment(session: AsyncSession, order: Order, payment_id: str, status: PaymentRecordStatus, **fields):
    existing = (
        await session.execute(select(Payment.id).where(Payment.gateway_payment_id == payment_id))
    ).scalar_one_or_none()
    if existing is not None:
        return
    session.add(
        Payment(
            order_id=order.id,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=payment_id,
            amount=order.total,
            currency=order.currency,
            status=status,
            **fields,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()


async def verify_payment(
    session: AsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    gateway_order_id: str,
    payment_id: str,
    signature: str,
) -> Order:
    """Apply a client-returned payment after checking the gateway signature.

    The signature is recomputed against the gateway order id stored on the
    order, never the one the client claims. Repeated calls for a paid order
    return it unchanged.
    """
    order = await load_order(session, order_id)

    if (
        not order.gateway_order_id
        or gateway_order_id != order.gateway_order_id
        or not gateway.verify_signature(order.gateway_order_id, payment_id, signature)
    ):
        logger.warning(
            "Signature mismatch for order %s (payment %s, claimed gateway order %s); possible tampering",
            order.order_number, payment_id, gateway_order_id,
        )
        raise SignatureError("Invalid payment signature")

    try:
        return await settle_payment(session, order, payment_id, signature=signature)
    except AlreadyProcessed:
        logger.info("Duplicate verification for order %s ignored", order.order_number)
        return await load_order(session, order_id)
    except InvalidTransitionError:
        logger.error(
            "Payment %s captured for order %s after it was cancelled; refund required",
            payment_id, order.order_number,
        )
        await _record_payment(
            session,
            order,
            payment_id,
            PaymentRecordStatus.COMPLETED,
            signature=signature,
            failure_reason="Order cancelled before payment was applied; refund required",
        )
        raise


async def record_payment_failure(
    session: AsyncSession,
    order_id: str,
    reason: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Order:
    order = await load_order(session, order_id)
    reason = reason or "Payment failed"
    try:
        order = await cancel_unpaid_order(session, order, reason)
    except AlreadyProcessed:
        order = await load_order(session, order_id)

    if payment_id:
        await _record_payment(session, order, payment_id, PaymentRecordStatus.FAILED, failure_reason=reason)
    return order


async def update_status(
    session: AsyncSession,
    order_id: str,
    new_status: OrderStatus,
    tracking_number: Optional[str] = None,
) -> Order:
    """Administrative fulfilment transition; never touches a pending payment except to fail it on cancel."""
    order = await load_order(session, order_id)
    current = order.status

    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move order {order.order_number} from {current.value} to {new_status.value}")
    if new_status in REQUIRES_PAYMENT and order.payment_status != PaymentStatus.PAID:
        raise InvalidTransitionError(f"Order {order.order_number} is not paid; it cannot be {new_status.value}")

    values = {"status": new_status, "updated_at": utcnow()}
    if tracking_number:
        values["tracking_number"] = tracking_number
    if new_status == OrderStatus.CANCELLED:
        values["cancellation_reason"] = "Cancelled by admin"
        if order.payment_status == PaymentStatus.PENDING:
            values["payment_status"] = PaymentStatus.FAILED

    result = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == current,
            Order.payment_status == order.payment_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        order_number = order.order_number
        await session.rollback()
        raise InvalidTransitionError(f"Order {order_number} changed concurrently; reload and retry")

    if new_status == OrderStatus.CANCELLED and current in (OrderStatus.PENDING, OrderStatus.PROCESSING):
        await release_reservations(session, order.id)
    await session.commit()

    order = await load_order(session, order.id)
    logger.info("Order %s moved from %s to %s", order.order_number, current.value, new_status.value)
    if new_status == OrderStatus.CANCELLED:
        await publish_event("order.cancelled", build_event("OrderCancelled", order))
    return order


async def list_orders(
    session: AsyncSession,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
    user_id: Optional[str] = None,
) -> Tuple[List[Order], int]:
    query = select(Order)
    count_query = select(func.count()).select_from(Order)
    if status is not None:
        query = query.where(Order.status == status)
        count_query = count_query.where(Order.status == status)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
        count_query = count_query.where(Order.user_id == user_id)

    result = await session.execute(
        query.order_by(Order.created_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    total = (await session.execute(count_query)).scalar_one()
    return list(result.scalars().all()), total
