# schemas/order_models.py
# ============================================================================
# ORDER AGGREGATE - ENTITY, VALUE OBJECTS, STATE MACHINE
# ============================================================================
# The order is the aggregate root. Every mutation goes through one of the
# transition methods below and returns a new copy; the repository decides
# whether that copy wins (compare-and-swap on version + payment status).
# ============================================================================

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from orders.errors import InvalidStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    UPI = "upi"
    NET_BANKING = "net_banking"
    WALLET = "wallet"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Statuses an admin may advance to through the shipping pipeline
FULFILMENT_STATUSES = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})

NON_CANCELLABLE = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})
SETTLED_PAYMENT = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
})


# =============================================================================
# VALUE OBJECTS
# =============================================================================

class Variant(CamelModel):
    color: str
    size: str
    sku: str


class OrderItem(CamelModel):
    product_ref: str = Field(..., min_length=1)
    variant: Variant
    quantity: int
    unit_price: Decimal


class Address(CamelModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class Customer(CamelModel):
    """Contact snapshot taken from the user directory when the order is placed"""
    name: str
    email: str
    phone: Optional[str] = None


class Payment(CamelModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    gateway: str = "payu"
    transaction_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_raw_response: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = None


# =============================================================================
# AGGREGATE ROOT
# =============================================================================

class Order(CamelModel):
    """Core order entity"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    customer: Customer
    items: list[OrderItem]
    shipping_address: Address
    billing_address: Address

    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal

    status: OrderStatus = OrderStatus.PENDING
    previous_status: Optional[OrderStatus] = None
    payment: Payment
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1  # Optimistic locking

    @computed_field
    @property
    def order_number(self) -> str:
        return f"ORD-{self.id[-8:].upper()}"

    @property
    def is_paid(self) -> bool:
        return self.payment.status == PaymentStatus.COMPLETED

    def _next(self, **changes: Any) -> "Order":
        changes.setdefault("updated_at", utcnow())
        changes["version"] = self.version + 1
        return self.model_copy(update=changes)

    def _check_status(self, new_status: OrderStatus, reason: Optional[str] = None) -> None:
        if new_status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidStateTransition(self.status.value, new_status.value, reason)

    def _check_payment(self, new_status: PaymentStatus) -> None:
        if new_status not in PAYMENT_TRANSITIONS[self.payment.status]:
            raise InvalidStateTransition(
                f"payment:{self.payment.status.value}",
                f"payment:{new_status.value}",
            )

    def transition_to(self, new_status: OrderStatus) -> "Order":
        """Immutable status transition, validated against the state machine"""
        self._check_status(new_status)
        return self._next(previous_status=self.status, status=new_status)

    def with_notes(self, notes: Optional[str]) -> "Order":
        if not notes:
            return self
        return self._next(notes=notes)

    def record_payment_success(
        self,
        transaction_id: str,
        gateway_payment_id: Optional[str],
        raw_response: dict[str, Any],
    ) -> "Order":
        """payment pending -> completed, order pending -> confirmed"""
        self._check_payment(PaymentStatus.COMPLETED)
        self._check_status(OrderStatus.CONFIRMED, "order is no longer awaiting payment")
        payment = self.payment.model_copy(update={
            "status": PaymentStatus.COMPLETED,
            "transaction_id": transaction_id,
            "gateway_payment_id": gateway_payment_id,
            "gateway_raw_response": raw_response,
            "failure_reason": None,
        })
        return self._next(
            payment=payment,
            previous_status=self.status,
            status=OrderStatus.CONFIRMED,
        )

    def record_payment_failure(
        self,
        transaction_id: str,
        reason: str,
        raw_response: dict[str, Any],
    ) -> "Order":
        """payment pending -> failed, order pending -> cancelled"""
        self._check_payment(PaymentStatus.FAILED)
        self._check_status(OrderStatus.CANCELLED, "order is no longer awaiting payment")
        payment = self.payment.model_copy(update={
            "status": PaymentStatus.FAILED,
            "transaction_id": transaction_id,
            "gateway_raw_response": raw_response,
            "failure_reason": reason,
        })
        return self._next(
            payment=payment,
            previous_status=self.status,
            status=OrderStatus.CANCELLED,
        )

    def cancel(self) -> "Order":
        """Customer/admin cancellation; a completed payment becomes refunded"""
        if self.status in NON_CANCELLABLE:
            raise InvalidStateTransition(
                self.status.value,
                OrderStatus.CANCELLED.value,
                "order has already been shipped or delivered",
            )
        self._check_status(OrderStatus.CANCELLED)
        payment = self.payment
        if payment.status == PaymentStatus.COMPLETED:
            self._check_payment(PaymentStatus.REFUNDED)
            payment = payment.model_copy(update={"status": PaymentStatus.REFUNDED})
        return self._next(
            payment=payment,
            previous_status=self.status,
            status=OrderStatus.CANCELLED,
        )
