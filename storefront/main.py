import asyncio
import contextlib
import logging
import math
from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront import config
from storefront.auth import CurrentUser, check_order_access, get_current_user, get_optional_user, require_admin
from storefront.catalog import get_settings_row, set_size_stock, update_settings
from storefront.database import SessionLocal, get_session, init_db
from storefront.errors import ErrorKind, StorefrontError
from storefront.gateway import PaymentGateway, RazorpayGateway
from storefront.lifecycle import (
    CartLine,
    create_order,
    create_payment_order,
    list_orders,
    load_order,
    record_payment_failure,
    update_status,
    verify_payment,
)
from storefront.messaging import close_rabbitmq, setup_rabbitmq
from storefront.models import OrderStatus
from storefront.reconciliation import (
    audit_order,
    audit_paid_orders,
    reconcile_pending_orders,
    run_reconciliation_loop,
)
from storefront.schemas import (
    GatewayPaymentRead,
    OrderCreate,
    OrderPage,
    OrderRead,
    Pagination,
    PaymentFailure,
    PaymentOrderCreate,
    PaymentOrderRead,
    PaymentVerify,
    ProductStockRead,
    ReconciliationRead,
    SettingsRead,
    SettingsUpdate,
    StatusUpdate,
    StockUpdate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Astros Kulture Order Service")

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.GATEWAY: 502,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.SIGNATURE: 400,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.ALREADY_PROCESSED: 200,
}

_gateway = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway.from_env()
    return _gateway


def get_session_factory():
    return SessionLocal


@app.on_event("startup")
async def startup_event():
    config.configure_logging()
    config.check_required_env()
    await init_db()
    await setup_rabbitmq()
    if config.RECONCILE_INTERVAL_SECONDS > 0:
        app.state.reconciler = asyncio.create_task(
            run_reconciliation_loop(SessionLocal, get_gateway(), config.RECONCILE_INTERVAL_SECONDS)
        )


@app.on_event("shutdown")
async def shutdown_event():
    reconciler = getattr(app.state, "reconciler", None)
    if reconciler is not None:
        reconciler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciler
    await close_rabbitmq()
    if _gateway is not None:
        await _gateway.aclose()


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    content = {"success": False, "kind": exc.kind.value, "message": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "message": "Internal server error"}
    if not config.is_production():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def _page(orders, total: int, page: int, limit: int) -> OrderPage:
    return OrderPage(
        data=[OrderRead.model_validate(order) for order in orders],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order_endpoint(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    lines = [CartLine(item.product_id, item.size, item.quantity) for item in order_data.items]
    order = await create_order(
        db,
        gateway,
        lines,
        order_data.shipping_address.model_dump(),
        user_id=user.id if user else None,
    )
    return OrderRead.model_validate(order)


@app.get("/api/orders", response_model=OrderPage)
async def get_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    admin: CurrentUser = Depends(require_admin),
):
    orders, total = await list_orders(db, status=status, page=page, limit=limit)
    return _page(orders, total, page, limit)


@app.get("/api/orders/my-orders", response_model=OrderPage)
async def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    user: CurrentUser = Depends(get_current_user),
):
    orders, total = await list_orders(db, page=page, limit=limit, user_id=user.id)
    return _page(orders, total, page, limit)


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    order = await load_order(db, order_id)
    check_order_access(order, user)
    return OrderRead.model_validate(order)


@app.put("/api/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    db: AsyncSession = Depends(get_session),
    admin: CurrentUser = Depends(require_admin),
):
    order = await update_status(db, order_id, payload.status, tracking_number=payload.tracking_number)
    return OrderRead.model_validate(order)


@app.post("/api/payments/create-order", response_model=PaymentOrderRead)
async def create_payment_order_endpoint(
    payload: PaymentOrderCreate,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    check_order_access(await load_order(db, payload.order_id), user)
    order = await create_payment_order(db, gateway, payload.order_id)
    return PaymentOrderRead(
        order_id=order.id,
        order_number=order.order_number,
        gateway_order_id=order.gateway_order_id,
        amount=order.total,
        currency=order.currency,
        key_id=config.RAZORPAY_KEY_ID,
    )


@app.post("/api/payments/verify", response_model=OrderRead)
async def verify_payment_endpoint(
    payload: PaymentVerify,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    check_order_access(await load_order(db, payload.order_id), user)
    order = await verify_payment(
        db,
        gateway,
        payload.order_id,
        payload.gateway_order_id,
        payload.payment_id,
        payload.signature,
    )
    return OrderRead.model_validate(order)


@app.post("/api/payments/failure", response_model=OrderRead)
async def payment_failure_endpoint(
    payload: PaymentFailure,
    db: AsyncSession = Depends(get_session),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    check_order_access(await load_order(db, payload.order_id), user)
    order = await record_payment_failure(db, payload.order_id, reason=payload.reason, payment_id=payload.payment_id)
    return OrderRead.model_validate(order)


@app.get("/api/payments/details/{payment_id}", response_model=GatewayPaymentRead)
async def payment_details(
    payment_id: str,
    gateway: PaymentGateway = Depends(get_gateway),
    user: CurrentUser = Depends(get_current_user),
):
    payment = await gateway.fetch_payment(payment_id)
    return GatewayPaymentRead.model_validate(payment)


@app.get("/api/settings", response_model=SettingsRead)
async def get_settings(db: AsyncSession = Depends(get_session)):
    return SettingsRead.model_validate(await get_settings_row(db))


@app.put("/api/settings", response_model=SettingsRead)
async def put_settings(
    payload: SettingsUpdate,
    db: AsyncSession = Depends(get_session),
    admin: CurrentUser = Depends(require_admin),
):
    row = await update_settings(db, payload.model_dump(exclude_unset=True))
    return SettingsRead.model_validate(row)


@app.put("/api/admin/products/{product_id}/stock", response_model=ProductStockRead)
async def put_product_stock(
    product_id: str,
    payload: StockUpdate,
    db: AsyncSession = Depends(get_session),
    admin: CurrentUser = Depends(require_admin),
):
    product = await set_size_stock(db, product_id, payload.size, payload.stock)
    return ProductStockRead.model_validate(product)


@app.post("/api/admin/reconcile", response_model=ReconciliationRead)
async def trigger_reconciliation(
    session_factory=Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: CurrentUser = Depends(require_admin),
):
    report = await reconcile_pending_orders(session_factory, gateway)
    return ReconciliationRead.model_validate(report)


@app.get("/api/admin/verify-payments")
async def verify_paid_orders(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: CurrentUser = Depends(require_admin),
):
    report = await audit_paid_orders(db, gateway, limit=limit)
    return report.as_dict()


@app.get("/api/admin/verify-payments/{order_id}")
async def verify_single_order(
    order_id: str,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: CurrentUser = Depends(require_admin),
):
    return asdict(await audit_order(db, gateway, order_id))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
