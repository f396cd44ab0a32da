from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal
from datetime import datetime
from storefront.models import OrderStatus, PaymentStatus


class CartItem(BaseModel):
    product_id: str = Field(..., examples=["6f1c2a9e-prod"])
    size: str = Field(..., min_length=1, examples=["M"])
    quantity: int = Field(..., gt=0, examples=[2])


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=3, max_length=12)
    country: str = Field("India", min_length=1)
    phone: str = Field(..., min_length=7, max_length=20)


class OrderCreate(BaseModel):
    items: List[CartItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress


class OrderItemRead(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    size: str

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: str
    order_number: str
    user_id: Optional[str] = None
    items: List[OrderItemRead]
    subtotal: float
    tax: float
    shipping: float
    total: float
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    shipping_address: ShippingAddress
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderPage(BaseModel):
    data: List[OrderRead]
    pagination: Pagination


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class PaymentOrderCreate(BaseModel):
    order_id: str


class PaymentOrderRead(BaseModel):
    order_id: str
    order_number: str
    gateway_order_id: str
    amount: float
    currency: str
    key_id: str


class PaymentVerify(BaseModel):
    order_id: str
    gateway_order_id: str
    payment_id: str
    signature: str


class PaymentFailure(BaseModel):
    order_id: str
    reason: Optional[str] = None
    payment_id: Optional[str] = None


class GatewayPaymentRead(BaseModel):
    id: str
    status: str
    amount: float
    currency: str
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    captured_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettingsRead(BaseModel):
    gst_percentage: float
    gst_enabled: bool
    shipping_fee: float
    shipping_enabled: bool
    free_shipping_above: float
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettingsUpdate(BaseModel):
    gst_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    gst_enabled: Optional[bool] = None
    shipping_fee: Optional[Decimal] = Field(None, ge=0)
    shipping_enabled: Optional[bool] = None
    free_shipping_above: Optional[Decimal] = Field(None, ge=0)


class StockUpdate(BaseModel):
    size: str = Field(..., min_length=1)
    stock: int = Field(..., ge=0)


class SizeStockRead(BaseModel):
    size: str
    stock: int

    class Config:
        from_attributes = True


class ProductStockRead(BaseModel):
    id: str
    name: str
    total_stock: int
    sizes: List[SizeStockRead]

    class Config:
        from_attributes = True


class ReconciliationRead(BaseModel):
    checked: int
    paid: List[str]
    cancelled: List[str]
    waiting: List[str]
    skipped: List[str]
    errors: List[dict]

    class Config:
        from_attributes = True
