"""Tests for the order service use cases."""

from decimal import Decimal

import pytest

from orders.errors import (
    ConcurrentModification,
    Forbidden,
    InvalidStateTransition,
    OrderNotFound,
    UserNotFound,
    ValidationError,
)
from orders.service import CheckoutUrls, OrderService
from payments.payu_gateway import format_amount
from schemas.order_models import OrderStatus, PaymentStatus
from services.notifier import NotificationType
from services.user_directory import Principal
from storage.audit_log import AuditEventType
from storage.order_repository import InMemoryOrderRepository


class NeverWinsRepository(InMemoryOrderRepository):
    async def compare_and_swap(self, updated, expected_version, expected_payment_status=None):
        return False


async def confirm(order, gateway_response, callback):
    return (await callback(gateway_response(order))).order


class TestCreateOrder:
    async def test_prices_and_persists(self, place_order, repository):
        created = await place_order()
        order = created.order

        assert order.subtotal == Decimal("30000")
        assert order.tax == Decimal("2400")
        assert order.shipping_cost == Decimal("0")
        assert order.total == Decimal("32400")
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.PENDING
        assert await repository.get(order.id) == order

    async def test_customer_snapshot(self, place_order):
        order = (await place_order(phone="9000000001")).order
        assert order.user_id == "user-1"
        assert order.customer.name == "Asha Rao"
        assert order.customer.email == "asha@example.com"
        assert order.customer.phone == "9000000001"

    async def test_signed_payment_request(self, place_order, signer):
        created = await place_order()
        order, request = created.order, created.payment_request

        assert order.payment.gateway_order_id.startswith(f"TXN_{order.id}_")
        assert request.txnid == order.payment.gateway_order_id
        assert request.amount == format_amount(order.total)
        assert request.udf1 == order.id
        assert request.productinfo == "Luxury Store Order - 1 items"
        assert request.hash == signer.payment_hash(
            request.txnid, request.amount, request.productinfo, request.firstname, request.email, (order.id,)
        )
        assert created.payment_url == "https://test.payu.in/_payment"

    async def test_flat_shipping(self, place_order):
        items = [{
            "product": "prod-tee",
            "variant": {"color": "white", "size": "S", "sku": "TEE-WHT-S"},
            "quantity": 1,
            "price": "1000",
        }]
        order = (await place_order(items)).order
        assert order.total == Decimal("1279")

    async def test_invalid_quantity(self, place_order, repository):
        items = [{
            "product": "prod-tee",
            "variant": {"color": "white", "size": "S", "sku": "TEE-WHT-S"},
            "quantity": 0,
            "price": "1000",
        }]
        with pytest.raises(ValidationError):
            await place_order(items)
        assert await repository.count() == 0

    async def test_unknown_user(self, place_order):
        with pytest.raises(UserNotFound):
            await place_order(principal=Principal(user_id="ghost"))

    async def test_audited(self, place_order, audit):
        order = (await place_order()).order
        entries = await audit.get_by_entity(order.id)
        assert [e.event_type for e in entries] == [AuditEventType.ORDER_CREATED]
        assert entries[0].actor == "user"


class TestQueries:
    async def test_owner_can_read(self, place_order, order_service, customer):
        order = (await place_order()).order
        assert (await order_service.get_order(customer, order.id)).id == order.id

    async def test_other_customer_gets_not_found(self, place_order, order_service, other_customer):
        order = (await place_order()).order
        with pytest.raises(OrderNotFound):
            await order_service.get_order(other_customer, order.id)

    async def test_admin_can_read_any(self, place_order, order_service, admin):
        order = (await place_order()).order
        assert (await order_service.get_order(admin, order.id)).id == order.id

    async def test_missing_order(self, order_service, customer):
        with pytest.raises(OrderNotFound):
            await order_service.get_order(customer, "nope")

    async def test_list_own_orders_paginated(self, place_order, order_service, customer, other_customer):
        created = [(await place_order()).order for _ in range(3)]
        await place_order(principal=other_customer)

        page = await order_service.list_orders(customer, page=1, limit=2)

        assert page.pagination.total == 3
        assert page.pagination.pages == 2
        assert [o.id for o in page.orders] == [created[2].id, created[1].id]
        second = await order_service.list_orders(customer, page=2, limit=2)
        assert [o.id for o in second.orders] == [created[0].id]

    async def test_admin_lists_everything(self, place_order, order_service, admin, other_customer):
        await place_order()
        await place_order(principal=other_customer)
        page = await order_service.list_orders(admin)
        assert page.pagination.total == 2

    async def test_status_filter(self, place_order, order_service, customer, gateway_response, callback):
        first = (await place_order()).order
        await place_order()
        await confirm(first, gateway_response, callback)

        page = await order_service.list_orders(customer, status=OrderStatus.CONFIRMED)

        assert [o.id for o in page.orders] == [first.id]


class TestUpdateStatus:
    async def test_requires_admin(self, place_order, order_service, customer):
        order = (await place_order()).order
        with pytest.raises(Forbidden):
            await order_service.update_status(customer, order.id, OrderStatus.PROCESSING)

    async def test_fulfilment_pipeline(
        self, place_order, order_service, admin, gateway_response, callback, dispatcher, notifications
    ):
        order = await confirm((await place_order()).order, gateway_response, callback)

        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order = await order_service.update_status(admin, order.id, status)
            assert order.status == status
        await dispatcher.drain()

        status_mails = [r for r in await notifications.recent() if r.notification_type == NotificationType.STATUS_UPDATE]
        assert len(status_mails) == 3

    async def test_cannot_skip_payment(self, place_order, order_service, admin):
        order = (await place_order()).order
        with pytest.raises(InvalidStateTransition):
            await order_service.update_status(admin, order.id, OrderStatus.PROCESSING)

    async def test_confirmed_is_not_manual(self, place_order, order_service, admin):
        order = (await place_order()).order
        with pytest.raises(InvalidStateTransition):
            await order_service.update_status(admin, order.id, OrderStatus.CONFIRMED)

    async def test_notes_recorded(self, place_order, order_service, admin, gateway_response, callback):
        order = await confirm((await place_order()).order, gateway_response, callback)
        updated = await order_service.update_status(admin, order.id, OrderStatus.PROCESSING, notes="Packed by Ravi")
        assert updated.notes == "Packed by Ravi"

    async def test_cancelled_uses_cancellation_rules(
        self, place_order, order_service, admin, gateway_response, callback
    ):
        order = await confirm((await place_order()).order, gateway_response, callback)
        updated = await order_service.update_status(admin, order.id, OrderStatus.CANCELLED)
        assert updated.status == OrderStatus.CANCELLED
        assert updated.payment.status == PaymentStatus.REFUNDED

    async def test_audited(self, place_order, order_service, admin, gateway_response, callback, audit):
        order = await confirm((await place_order()).order, gateway_response, callback)
        await order_service.update_status(admin, order.id, OrderStatus.PROCESSING)
        entries = await audit.get_by_entity(order.id)
        assert entries[-1].event_type == AuditEventType.ORDER_STATUS_UPDATED
        assert entries[-1].new_state == {"status": "processing"}


class TestCancelOrder:
    async def test_owner_cancels_unpaid_order(self, place_order, order_service, customer):
        order = (await place_order()).order
        cancelled = await order_service.cancel_order(customer, order.id)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.payment.status == PaymentStatus.PENDING

    async def test_paid_order_is_refunded(self, place_order, order_service, customer, gateway_response, callback, audit):
        order = await confirm((await place_order()).order, gateway_response, callback)

        cancelled = await order_service.cancel_order(customer, order.id)

        assert cancelled.payment.status == PaymentStatus.REFUNDED
        assert cancelled.total == order.total
        flagged = await audit.get_flagged()
        assert flagged[0].event_type == AuditEventType.PAYMENT_REFUNDED

    @pytest.mark.parametrize("target", [OrderStatus.SHIPPED, OrderStatus.DELIVERED])
    async def test_cannot_cancel_after_dispatch(
        self, place_order, order_service, admin, customer, gateway_response, callback, target
    ):
        order = await confirm((await place_order()).order, gateway_response, callback)
        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order = await order_service.update_status(admin, order.id, status)
            if status == target:
                break

        with pytest.raises(InvalidStateTransition):
            await order_service.cancel_order(customer, order.id)

    async def test_other_customer_cannot_cancel(self, place_order, order_service, other_customer, repository):
        order = (await place_order()).order
        with pytest.raises(OrderNotFound):
            await order_service.cancel_order(other_customer, order.id)
        assert (await repository.get(order.id)).status == OrderStatus.PENDING

    async def test_admin_can_cancel(self, place_order, order_service, admin):
        order = (await place_order()).order
        assert (await order_service.cancel_order(admin, order.id)).status == OrderStatus.CANCELLED

    async def test_sends_status_email(self, place_order, order_service, customer, dispatcher, transport):
        order = (await place_order()).order
        await order_service.cancel_order(customer, order.id)
        await dispatcher.drain()
        assert transport.sent[-1].subject == f"Order Update - {order.order_number}"
        assert "cancelled" in transport.sent[-1].text


class TestWriteConflicts:
    async def test_gives_up_after_retries(self, users, signer, dispatcher, audit, customer, order_request):
        repository = NeverWinsRepository()
        service = OrderService(
            orders=repository,
            users=users,
            signer=signer,
            dispatcher=dispatcher,
            audit=audit,
            checkout_urls=CheckoutUrls(success_url="http://cb", failure_url="http://cb"),
        )
        order = (await service.create_order(customer, order_request)).order

        with pytest.raises(ConcurrentModification) as exc:
            await service.cancel_order(customer, order.id)

        assert exc.value.http_status == 409
        assert (await repository.get(order.id)).status == OrderStatus.PENDING
