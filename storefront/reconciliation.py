"""Out-of-band payment reconciliation.

``reconcile_pending_orders`` promotes pending orders whose payment the
gateway has captured and expires the ones that stayed unpaid past the grace
window. ``audit_paid_orders`` is the read-only counterpart that checks paid
orders against the gateway's payment records.

Run once with ``python -m storefront.reconciliation`` (``--audit`` for the
audit); the web app also runs the reconciliation periodically.
"""
import argparse
import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront import config
from storefront.errors import AlreadyProcessed, GatewayError, GatewayUnavailable, InvalidTransitionError
from storefront.gateway import PaymentGateway
from storefront.lifecycle import cancel_unpaid_order, load_order, settle_payment
from storefront.models import Order, OrderStatus, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Payment not received within grace window"
AMOUNT_TOLERANCE = Decimal("0.01")


class Outcome(str, enum.Enum):
    PAID = "paid"
    CANCELLED = "cancelled"
    WAITING = "waiting"
    SKIPPED = "skipped"


@dataclass
class ReconciliationReport:
    checked: int = 0
    paid: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    waiting: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)

    def record(self, outcome: Outcome, order_id: str):
        getattr(self, outcome.value).append(order_id)

    def summary(self) -> str:
        return (
            f"checked={self.checked} paid={len(self.paid)} cancelled={len(self.cancelled)} "
            f"waiting={len(self.waiting)} skipped={len(self.skipped)} errors={len(self.errors)}"
        )


async def reconcile_order(
    session: AsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    cutoff: datetime,
) -> Outcome:
    order = await load_order(session, order_id)
    if order.payment_status != PaymentStatus.PENDING or order.status != OrderStatus.PENDING:
        return Outcome.SKIPPED

    if order.gateway_order_id:
        try:
            payments = await gateway.fetch_payments(order.gateway_order_id)
        except GatewayUnavailable:
            raise
        except GatewayError as e:
            if order.created_at >= cutoff:
                raise
            # A rejected lookup is permanent; past the grace window the order expires.
            logger.warning(
                "Order %s: gateway rejected payment lookup for %s (%s); expiring",
                order.order_number, order.gateway_order_id, e.message,
            )
            payments = []
        successful = next((p for p in payments if p.is_successful), None)
        if successful is not None:
            logger.info("Order %s: found %s payment %s", order.order_number, successful.status, successful.id)
            try:
                await settle_payment(
                    session, order, successful.id, amount=successful.amount, method=successful.method
                )
            except AlreadyProcessed:
                return Outcome.SKIPPED
            return Outcome.PAID

    if order.created_at < cutoff:
        try:
            await cancel_unpaid_order(session, order, EXPIRY_REASON)
        except (AlreadyProcessed, InvalidTransitionError):
            # Verified or failed by a request while we were looking at it.
            return Outcome.SKIPPED
        return Outcome.CANCELLED

    return Outcome.WAITING


async def reconcile_pending_orders(
    session_factory,
    gateway: PaymentGateway,
    grace_window: timedelta = timedelta(hours=config.PAYMENT_GRACE_HOURS),
    delay: float = config.RECONCILE_DELAY_SECONDS,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    cutoff = (now or utcnow()) - grace_window

    async with session_factory() as session:
        result = await session.execute(
            select(Order.id)
            .where(Order.payment_status == PaymentStatus.PENDING, Order.status == OrderStatus.PENDING)
            .order_by(Order.created_at)
        )
        order_ids = list(result.scalars().all())
    logger.info("Found %d pending orders to check", len(order_ids))

    report = ReconciliationReport()
    for index, order_id in enumerate(order_ids):
        report.checked += 1
        try:
            async with session_factory() as session:
                outcome = await reconcile_order(session, gateway, order_id, cutoff)
        except Exception as e:
            logger.exception("Error reconciling order %s", order_id)
            report.errors.append({"order_id": order_id, "error": str(e)})
        else:
            report.record(outcome, order_id)

        if delay and index < len(order_ids) - 1:
            # Keep clear of the provider's rate limits.
            await asyncio.sleep(delay)

    logger.info("Reconciliation complete: %s", report.summary())
    return report


async def run_reconciliation_loop(session_factory, gateway: PaymentGateway, interval: float):
    while True:
        try:
            await reconcile_pending_orders(session_factory, gateway)
        except Exception:
            logger.exception("Reconciliation run failed")
        await asyncio.sleep(interval)


@dataclass
class AuditEntry:
    order_id: str
    order_number: str
    db_total: Decimal
    db_payment_status: str
    payment_id: Optional[str]
    gateway_order_id: Optional[str]
    gateway_amount: Optional[Decimal] = None
    gateway_status: Optional[str] = None
    gateway_method: Optional[str] = None
    amount_match: bool = False
    status_match: bool = False
    issues: List[str] = field(default_factory=list)
    severity: Optional[str] = None


@dataclass
class AuditReport:
    total: int = 0
    matches: List[AuditEntry] = field(default_factory=list)
    discrepancies: List[AuditEntry] = field(default_factory=list)
    errors: List[AuditEntry] = field(default_factory=list)

    @property
    def match_percentage(self) -> float:
        if not self.total:
            return 0.0
        return round(len(self.matches) / self.total * 100, 2)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["summary"] = {
            "total": self.total,
            "matches": len(self.matches),
            "discrepancies": len(self.discrepancies),
            "errors": len(self.errors),
            "match_percentage": self.match_percentage,
        }
        return data


def _entry_for(order: Order, issues=None) -> AuditEntry:
    return AuditEntry(
        order_id=order.id,
        order_number=order.order_number,
        db_total=Decimal(order.total),
        db_payment_status=order.payment_status.value,
        payment_id=order.payment_id,
        gateway_order_id=order.gateway_order_id,
        issues=list(issues or []),
    )


async def check_order_payment(gateway: PaymentGateway, order: Order) -> AuditEntry:
    entry = _entry_for(order)
    if not order.payment_id:
        entry.issues.append("Missing payment ID in database")
        entry.severity = "high"
        return entry

    payment = await gateway.fetch_payment(order.payment_id)
    entry.gateway_amount = payment.amount
    entry.gateway_status = payment.status
    entry.gateway_method = payment.method
    entry.amount_match = abs(entry.db_total - payment.amount) < AMOUNT_TOLERANCE
    entry.status_match = order.payment_status == PaymentStatus.PAID and payment.is_successful

    if not entry.amount_match:
        entry.issues.append(f"Amount mismatch: database {entry.db_total} vs gateway {payment.amount}")
        entry.severity = "high"
    if not entry.status_match:
        entry.issues.append(f"Status mismatch: database {entry.db_payment_status} vs gateway {payment.status}")
        entry.severity = entry.severity or "medium"
    return entry


async def audit_order(session: AsyncSession, gateway: PaymentGateway, order_id: str) -> AuditEntry:
    order = await load_order(session, order_id)
    try:
        return await check_order_payment(gateway, order)
    except GatewayError as e:
        return _entry_for(order, issues=[f"Gateway error: {e.message}"])


async def audit_paid_orders(
    session: AsyncSession,
    gateway: PaymentGateway,
    limit: int = 100,
    delay: float = 0.1,
) -> AuditReport:
    result = await session.execute(
        select(Order)
        .where(Order.payment_status == PaymentStatus.PAID)
        .order_by(Order.created_at.desc())
        .limit(limit)
    )
    orders = list(result.scalars().all())
    logger.info("Auditing %d paid orders", len(orders))

    report = AuditReport(total=len(orders))
    for order in orders:
        try:
            entry = await check_order_payment(gateway, order)
        except GatewayError as e:
            logger.warning("Gateway error while auditing order %s: %s", order.order_number, e.message)
            report.errors.append(_entry_for(order, issues=[e.message]))
        else:
            if entry.issues:
                report.discrepancies.append(entry)
            else:
                report.matches.append(entry)
        if delay and order.payment_id:
            await asyncio.sleep(delay)

    logger.info(
        "Audit complete: %d matches, %d discrepancies, %d errors",
        len(report.matches), len(report.discrepancies), len(report.errors),
    )
    return report


async def main(audit: bool = False):
    from storefront.database import SessionLocal, engine
    from storefront.gateway import RazorpayGateway

    config.configure_logging()
    config.check_required_env()
    gateway = RazorpayGateway.from_env()
    try:
        if audit:
            async with SessionLocal() as session:
                report = await audit_paid_orders(session, gateway)
            for entry in report.discrepancies:
                logger.warning("%s: %s", entry.order_number, "; ".join(entry.issues))
        else:
            await reconcile_pending_orders(SessionLocal, gateway)
    finally:
        await gateway.aclose()
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile pending orders against the payment gateway")
    parser.add_argument("--audit", action="store_true", help="audit paid orders instead of reconciling pending ones")
    args = parser.parse_args()
    try:
        asyncio.run(main(audit=args.audit))
    except KeyboardInterrupt:
        logger.info("Reconciliation stopped")
