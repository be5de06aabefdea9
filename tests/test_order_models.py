"""Tests for the order aggregate and its state machine."""

from decimal import Decimal

import pytest

from orders.errors import InvalidStateTransition
from schemas.order_models import (
    Address,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Variant,
)


def make_order(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING, **overrides):
    address = Address(street="1 Main St", city="Pune", state="MH", zip_code="411001", country="India")
    fields = dict(
        id="5f2b9c0e8d7a4e1f9a3b6c2d1e0f4a7b",
        user_id="user-1",
        customer=Customer(name="Asha Rao", email="asha@example.com"),
        items=[OrderItem(
            product_ref="prod-1",
            variant=Variant(color="black", size="L", sku="TEE-BLK-L"),
            quantity=1,
            unit_price=Decimal("1000"),
        )],
        shipping_address=address,
        billing_address=address,
        subtotal=Decimal("1000"),
        tax=Decimal("80"),
        shipping_cost=Decimal("199"),
        total=Decimal("1279"),
        status=status,
        payment=Payment(method=PaymentMethod.CREDIT_CARD, status=payment_status),
    )
    fields.update(overrides)
    return Order(**fields)


class TestOrderBasics:
    def test_order_number(self):
        assert make_order().order_number == "ORD-1E0F4A7B"

    def test_wire_format_is_camel_case(self):
        data = make_order().model_dump(mode="json", by_alias=True)
        assert data["userId"] == "user-1"
        assert data["shippingAddress"]["zipCode"] == "411001"
        assert data["payment"]["gateway"] == "payu"
        assert "shippingCost" in data

    def test_accepts_snake_case_input(self):
        order = Order.model_validate(make_order().model_dump())
        assert order.shipping_address.zip_code == "411001"


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
        (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    ])
    def test_forward_transitions(self, current, target):
        order = make_order(status=current)
        updated = order.transition_to(target)
        assert updated.status == target
        assert updated.previous_status == current

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.SHIPPED),
        (OrderStatus.CONFIRMED, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.PROCESSING),
        (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
        (OrderStatus.SHIPPED, OrderStatus.PROCESSING),
    ])
    def test_invalid_transitions(self, current, target):
        with pytest.raises(InvalidStateTransition):
            make_order(status=current).transition_to(target)

    def test_transition_returns_new_copy(self):
        order = make_order()
        updated = order.transition_to(OrderStatus.CONFIRMED)
        assert order.status == OrderStatus.PENDING
        assert order.version == 1
        assert updated.version == 2
        assert updated.updated_at >= order.updated_at

    def test_with_notes_keeps_version_when_empty(self):
        order = make_order()
        assert order.with_notes(None) is order
        assert order.with_notes("gift wrap").version == 2


class TestPaymentRecording:
    def test_success_confirms(self):
        order = make_order().record_payment_success("TXN_1", "mih-1", {"status": "success"})
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment.status == PaymentStatus.COMPLETED
        assert order.payment.transaction_id == "TXN_1"
        assert order.payment.gateway_payment_id == "mih-1"
        assert order.is_paid

    def test_failure_cancels(self):
        order = make_order().record_payment_failure("TXN_1", "Card declined", {"status": "failure"})
        assert order.status == OrderStatus.CANCELLED
        assert order.payment.status == PaymentStatus.FAILED
        assert order.payment.transaction_id == "TXN_1"
        assert order.payment.failure_reason == "Card declined"

    def test_failed_payment_cannot_complete(self):
        order = make_order().record_payment_failure("TXN_1", "Card declined", {})
        with pytest.raises(InvalidStateTransition):
            order.record_payment_success("TXN_2", "mih-2", {})

    def test_payment_on_cancelled_order_rejected(self):
        order = make_order().cancel()
        with pytest.raises(InvalidStateTransition):
            order.record_payment_success("TXN_1", "mih-1", {})


class TestCancellation:
    @pytest.mark.parametrize("status", [OrderStatus.SHIPPED, OrderStatus.DELIVERED])
    def test_cannot_cancel_after_dispatch(self, status):
        with pytest.raises(InvalidStateTransition) as exc:
            make_order(status=status, payment_status=PaymentStatus.COMPLETED).cancel()
        assert exc.value.current == status.value

    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING])
    def test_cancel_before_dispatch(self, status):
        cancelled = make_order(status=status).cancel()
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.previous_status == status

    def test_cancel_refunds_completed_payment(self):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        cancelled = order.cancel()
        assert cancelled.payment.status == PaymentStatus.REFUNDED
        assert cancelled.total == order.total

    def test_cancel_leaves_pending_payment(self):
        cancelled = make_order().cancel()
        assert cancelled.payment.status == PaymentStatus.PENDING

    def test_cannot_cancel_twice(self):
        with pytest.raises(InvalidStateTransition):
            make_order().cancel().cancel()
