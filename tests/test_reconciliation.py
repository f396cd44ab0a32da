from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update

from storefront.errors import GatewayError, GatewayUnavailable
from storefront.lifecycle import create_order, load_order, verify_payment
from storefront.models import Order, OrderStatus, PaymentStatus, utcnow
from storefront.reconciliation import (
    EXPIRY_REASON,
    Outcome,
    audit_order,
    audit_paid_orders,
    reconcile_order,
    reconcile_pending_orders,
)

from conftest import ADDRESS, FakeGateway, add_product, cart, sign, stock_of

LATER = timedelta(hours=25)


async def pending_order(session, gateway, product_id, quantity=1):
    return await create_order(session, gateway, cart(product_id, quantity=quantity), ADDRESS)


@pytest.mark.asyncio
async def test_expired_unpaid_order_is_cancelled_and_stock_restored(session, session_factory, gateway):
    product_id = await add_product(session, sizes={"M": 10})
    order = await pending_order(session, gateway, product_id, quantity=2)
    assert await stock_of(session_factory, product_id, "M") == 8

    report = await reconcile_pending_orders(session_factory, gateway, delay=0, now=utcnow() + LATER)

    assert report.cancelled == [order.id]
    assert report.checked == 1
    order = await load_order(session, order.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.FAILED
    assert order.cancellation_reason == EXPIRY_REASON
    assert await stock_of(session_factory, product_id, "M") == 10


@pytest.mark.asyncio
async def test_captured_payment_promotes_order(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_abc"])
    order = await pending_order(session, gateway, product_id)
    gateway.add_payment("order_abc", "pay_failed", status="failed", amount=order.total)
    gateway.add_payment("order_abc", "pay_ok", status="captured", amount=order.total, method="card")

    report = await reconcile_pending_orders(session_factory, gateway, delay=0, now=utcnow() + LATER)

    assert report.paid == [order.id]
    order = await load_order(session, order.id)
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.PROCESSING
    assert order.payment_id == "pay_ok"
    assert await stock_of(session_factory, product_id, "M") == 9


@pytest.mark.asyncio
async def test_young_unpaid_order_is_left_waiting(session, session_factory, gateway):
    product_id = await add_product(session)
    order = await pending_order(session, gateway, product_id)

    report = await reconcile_pending_orders(session_factory, gateway, delay=0)

    assert report.waiting == [order.id]
    assert (await load_order(session, order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_order_without_gateway_order_expires(session, session_factory, gateway):
    product_id = await add_product(session, sizes={"M": 4})
    gateway.fail_create = GatewayError("Authentication failed")
    with pytest.raises(GatewayError) as exc_info:
        await pending_order(session, gateway, product_id)
    order_id = exc_info.value.details["order_id"]

    report = await reconcile_pending_orders(session_factory, gateway, delay=0, now=utcnow() + LATER)

    assert report.cancelled == [order_id]
    assert await stock_of(session_factory, product_id, "M") == 4


@pytest.mark.asyncio
async def test_gateway_error_on_one_order_does_not_abort_the_run(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_broken", "order_fine"])
    broken = await pending_order(session, gateway, product_id)
    fine = await pending_order(session, gateway, product_id)
    gateway.fetch_errors["order_broken"] = GatewayUnavailable("Payment gateway returned HTTP 503")

    report = await reconcile_pending_orders(session_factory, gateway, delay=0, now=utcnow() + LATER)

    assert report.checked == 2
    assert [error["order_id"] for error in report.errors] == [broken.id]
    assert report.cancelled == [fine.id]
    assert (await load_order(session, broken.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_rejected_payment_lookup_expires_stale_order(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_gone"])
    order = await pending_order(session, gateway, product_id, quantity=3)
    gateway.fetch_errors["order_gone"] = GatewayError("The id provided does not exist")

    report = await reconcile_pending_orders(session_factory, gateway, delay=0, now=utcnow() + LATER)

    assert report.cancelled == [order.id]
    assert report.errors == []
    assert (await load_order(session, order.id)).cancellation_reason == EXPIRY_REASON
    assert await stock_of(session_factory, product_id, "M") == 10


@pytest.mark.asyncio
async def test_rejected_payment_lookup_on_young_order_is_reported(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_gone"])
    order = await pending_order(session, gateway, product_id)
    gateway.fetch_errors["order_gone"] = GatewayError("The id provided does not exist")

    report = await reconcile_pending_orders(session_factory, gateway, delay=0)

    assert [error["order_id"] for error in report.errors] == [order.id]
    assert (await load_order(session, order.id)).status == OrderStatus.PENDING
    assert await stock_of(session_factory, product_id, "M") == 9


@pytest.mark.asyncio
async def test_reconciliation_sleeps_between_orders(session, session_factory, gateway):
    product_id = await add_product(session, sizes={"M": 10})
    for _ in range(3):
        await pending_order(session, gateway, product_id)

    with patch("storefront.reconciliation.asyncio.sleep", new_callable=AsyncMock) as sleep:
        report = await reconcile_pending_orders(session_factory, gateway, delay=0.5)

    assert report.checked == 3
    assert [call.args for call in sleep.await_args_list].count((0.5,)) == 2


@pytest.mark.asyncio
async def test_reconcile_skips_order_verified_meanwhile(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_abc"])
    order = await pending_order(session, gateway, product_id)
    gateway.add_payment("order_abc", "pay_xyz", amount=order.total)
    await verify_payment(session, gateway, order.id, "order_abc", "pay_xyz", sign("order_abc", "pay_xyz"))

    async with session_factory() as other:
        outcome = await reconcile_order(other, gateway, order.id, utcnow())

    assert outcome == Outcome.SKIPPED
    assert await stock_of(session_factory, product_id, "M") == 9


@pytest.mark.asyncio
async def test_verify_after_reconciliation_does_not_apply_twice(session, session_factory):
    product_id = await add_product(session, sizes={"M": 10})
    gateway = FakeGateway(order_ids=["order_abc"])
    order = await pending_order(session, gateway, product_id)
    gateway.add_payment("order_abc", "pay_xyz", amount=order.total)

    async with session_factory() as other:
        assert await reconcile_order(other, gateway, order.id, utcnow()) == Outcome.PAID

    verified = await verify_payment(session, gateway, order.id, "order_abc", "pay_xyz", sign("order_abc", "pay_xyz"))

    assert verified.payment_status == PaymentStatus.PAID
    assert await stock_of(session_factory, product_id, "M") == 9


async def make_paid(session, gateway, product_id, gateway_order_id, payment_id):
    gateway.next_ids.append(gateway_order_id)
    order = await pending_order(session, gateway, product_id)
    await verify_payment(session, gateway, order.id, gateway_order_id, payment_id, sign(gateway_order_id, payment_id))
    return order


@pytest.mark.asyncio
async def test_audit_reports_matches_and_discrepancies(session, gateway):
    product_id = await add_product(session, sizes={"M": 10})
    good = await make_paid(session, gateway, product_id, "order_1", "pay_1")
    short = await make_paid(session, gateway, product_id, "order_2", "pay_2")
    refunded = await make_paid(session, gateway, product_id, "order_3", "pay_3")
    gateway.add_payment("order_1", "pay_1", amount=good.total)
    gateway.add_payment("order_2", "pay_2", amount=Decimal("1.00"))
    gateway.add_payment("order_3", "pay_3", status="refunded", amount=refunded.total)

    report = await audit_paid_orders(session, gateway, delay=0)

    assert report.total == 3
    assert [entry.order_id for entry in report.matches] == [good.id]
    by_id = {entry.order_id: entry for entry in report.discrepancies}
    assert by_id[short.id].severity == "high"
    assert by_id[short.id].amount_match is False
    assert by_id[refunded.id].severity == "medium"
    assert by_id[refunded.id].status_match is False
    summary = report.as_dict()["summary"]
    assert summary["match_percentage"] == pytest.approx(33.33)


@pytest.mark.asyncio
async def test_audit_flags_paid_order_without_payment_id(session, gateway):
    product_id = await add_product(session)
    order = await make_paid(session, gateway, product_id, "order_1", "pay_1")
    await session.execute(update(Order).where(Order.id == order.id).values(payment_id=None))
    await session.commit()

    entry = await audit_order(session, gateway, order.id)

    assert entry.severity == "high"
    assert entry.issues == ["Missing payment ID in database"]


@pytest.mark.asyncio
async def test_audit_records_gateway_errors(session, gateway):
    product_id = await add_product(session)
    order = await make_paid(session, gateway, product_id, "order_1", "pay_unknown")

    report = await audit_paid_orders(session, gateway, delay=0)
    entry = await audit_order(session, gateway, order.id)

    assert [e.order_id for e in report.errors] == [order.id]
    assert entry.issues[0].startswith("Gateway error:")
