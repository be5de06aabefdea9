# schemas/api_models.py
# ============================================================================
# REQUEST / RESPONSE MODELS FOR THE ORDERS API
# ============================================================================

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from payments.payu_gateway import PaymentRequest
from schemas.order_models import (
    Address,
    CamelModel,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Variant,
)


class OrderItemInput(CamelModel):
    """Line item as posted by the storefront"""
    product: str = Field(..., min_length=1)
    variant: Variant
    quantity: int
    price: Decimal

    def to_item(self) -> OrderItem:
        return OrderItem(
            product_ref=self.product,
            variant=self.variant,
            quantity=self.quantity,
            unit_price=self.price,
        )


class CreateOrderRequest(CamelModel):
    items: list[OrderItemInput] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = None
    phone: Optional[str] = None


class CreateOrderResponse(CamelModel):
    message: str = "Order created successfully"
    order: Order
    payment_request: PaymentRequest
    payment_url: str


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    message: Optional[str] = None
    order: Order


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderListResponse(BaseModel):
    orders: list[Order]
    pagination: Pagination


class PaymentResultResponse(CamelModel):
    success: bool
    order_id: str
    order: Order
    message: str
    replayed: bool = False


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
    errors: Optional[list[dict]] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    gateway_environment: str
    order_store: str
    uptime_seconds: float
