"""
Order Service
=============
Use cases for the customer-visible order lifecycle:
- create an order, price it and sign the gateway hand-off
- read/list orders (owners see their own, admins see all)
- admin status progression: confirmed -> processing -> shipped -> delivered
- cancellation by the owner or an admin (refunds a completed payment)

Payment outcomes are not recorded here; see payments.reconciliation.
"""

import math
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from orders.errors import (
    ConcurrentModification,
    Forbidden,
    InvalidStateTransition,
    OrderNotFound,
    UserNotFound,
    ValidationError,
)
from orders.totals import calculate_totals
from payments.payu_gateway import GatewaySigner
from schemas.api_models import CreateOrderRequest, CreateOrderResponse, OrderListResponse, Pagination
from schemas.order_models import (
    FULFILMENT_STATUSES,
    Customer,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
)
from services.notifier import NotificationDispatcher
from services.user_directory import IUserDirectory, Principal
from storage.audit_log import AuditEventType, IAuditLog, emit_audit
from storage.order_repository import IOrderRepository

DEFAULT_PHONE = "9999999999"
MAX_PAGE_SIZE = 100


@dataclass
class CheckoutUrls:
    """Where the gateway sends the browser after payment"""
    success_url: str
    failure_url: str


class OrderService:
    """Order lifecycle use cases"""

    def __init__(
        self,
        orders: IOrderRepository,
        users: IUserDirectory,
        signer: GatewaySigner,
        dispatcher: NotificationDispatcher,
        audit: IAuditLog,
        checkout_urls: CheckoutUrls,
        store_name: str = "Luxury Store",
        max_write_attempts: int = 3,
    ):
        self.orders = orders
        self.users = users
        self.signer = signer
        self.dispatcher = dispatcher
        self.audit = audit
        self.checkout_urls = checkout_urls
        self.store_name = store_name
        self.max_write_attempts = max_write_attempts
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="order_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_order(self, principal: Principal, request: CreateOrderRequest) -> CreateOrderResponse:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not request.items:
            raise ValidationError("Invalid order data", errors=[{"field": "items", "message": "At least one item is required"}])
        totals = calculate_totals((item.price, item.quantity) for item in request.items)

        user = await self.users.get(principal.user_id)
        if user is None:
            raise UserNotFound(principal.user_id)

        order_id = uuid.uuid4().hex
        txnid = self.signer.generate_transaction_id(order_id)
        order = Order(
            id=order_id,
            user_id=user.id,
            customer=Customer(
                name=user.full_name or user.email,
                email=user.email,
                phone=request.phone or user.phone,
            ),
            items=[item.to_item() for item in request.items],
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping_cost=totals.shipping_cost,
            total=totals.total,
            payment=Payment(method=request.payment_method, gateway_order_id=txnid),
            notes=request.notes,
        )
        await self.orders.create(order)

        payment_request = self.signer.prepare_payment_request(
            order_id=order.id,
            amount=order.total,
            product_info=f"{self.store_name} Order - {len(order.items)} items",
            customer_name=order.customer.name,
            customer_email=order.customer.email,
            customer_phone=order.customer.phone or DEFAULT_PHONE,
            success_url=self.checkout_urls.success_url,
            failure_url=self.checkout_urls.failure_url,
            txnid=txnid,
        )

        await emit_audit(
            self.audit,
            event_type=AuditEventType.ORDER_CREATED,
            entity_type="order",
            entity_id=order.id,
            correlation_id=correlation_id,
            new_state={"status": order.status.value, "payment_status": order.payment.status.value},
            metadata={"total": str(order.total), "gateway_order_id": txnid},
            actor="user",
        )
        log.info("order_created",
                 order_id=order.id,
                 user_id=order.user_id,
                 items=len(order.items),
                 total=str(order.total))

        return CreateOrderResponse(
            order=order,
            payment_request=payment_request,
            payment_url=self.signer.gateway_url,
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, principal: Principal, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None or not principal.can_access(order.user_id):
            raise OrderNotFound(order_id)
        return order

    async def list_orders(
        self,
        principal: Principal,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> OrderListResponse:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        user_id = None if principal.is_admin else principal.user_id

        orders = await self.orders.list(user_id=user_id, status=status, skip=(page - 1) * limit, limit=limit)
        total = await self.orders.count(user_id=user_id, status=status)
        return OrderListResponse(
            orders=orders,
            pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        )

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def _write(self, order_id: str, principal: Principal, mutate: Callable[[Order], Order]) -> tuple[Order, Order]:
        """Read, apply ``mutate`` and compare-and-swap on version; re-read on conflict"""
        for _ in range(self.max_write_attempts):
            current = await self.orders.get(order_id)
            if current is None or not principal.can_access(current.user_id):
                raise OrderNotFound(order_id)
            updated = mutate(current)
            if await self.orders.compare_and_swap(updated, expected_version=current.version):
                return current, updated
        raise ConcurrentModification(order_id)

    async def update_status(
        self,
        principal: Principal,
        order_id: str,
        status: OrderStatus,
        notes: Optional[str] = None,
    ) -> Order:
        """Admin-only forward progression along the fulfilment pipeline"""
        if not principal.is_admin:
            raise Forbidden()
        if status == OrderStatus.CANCELLED:
            return await self.cancel_order(principal, order_id, notes=notes)

        def advance(order: Order) -> Order:
            if status not in FULFILMENT_STATUSES:
                raise InvalidStateTransition(
                    order.status.value,
                    status.value,
                    "only processing, shipped and delivered can be set manually",
                )
            return order.transition_to(status).with_notes(notes)

        correlation_id = str(uuid.uuid4())
        previous, updated = await self._write(order_id, principal, advance)

        await emit_audit(
            self.audit,
            event_type=AuditEventType.ORDER_STATUS_UPDATED,
            entity_type="order",
            entity_id=order_id,
            correlation_id=correlation_id,
            previous_state={"status": previous.status.value},
            new_state={"status": updated.status.value},
            metadata={"admin_id": principal.user_id},
            actor="admin",
        )
        self._get_logger(correlation_id).info("order_status_updated",
                                              order_id=order_id,
                                              previous=previous.status.value,
                                              status=updated.status.value)
        self.dispatcher.status_changed(updated)
        return updated

    async def cancel_order(self, principal: Principal, order_id: str, notes: Optional[str] = None) -> Order:
        """Owner or admin cancellation; rejected once shipped or delivered"""
        correlation_id = str(uuid.uuid4())
        previous, updated = await self._write(
            order_id, principal, lambda order: order.cancel().with_notes(notes)
        )

        actor = "admin" if principal.is_admin else "user"
        await emit_audit(
            self.audit,
            event_type=AuditEventType.ORDER_CANCELLED,
            entity_type="order",
            entity_id=order_id,
            correlation_id=correlation_id,
            previous_state={"status": previous.status.value, "payment_status": previous.payment.status.value},
            new_state={"status": updated.status.value, "payment_status": updated.payment.status.value},
            actor=actor,
        )
        if updated.payment.status == PaymentStatus.REFUNDED and previous.payment.status != PaymentStatus.REFUNDED:
            # TODO: call the PayU refund API once merchant refunds are enabled
            await emit_audit(
                self.audit,
                event_type=AuditEventType.PAYMENT_REFUNDED,
                entity_type="payment",
                entity_id=order_id,
                correlation_id=correlation_id,
                metadata={"transaction_id": updated.payment.transaction_id, "amount": str(updated.total)},
                actor=actor,
                needs_review=True,
            )

        self._get_logger(correlation_id).info("order_cancelled",
                                              order_id=order_id,
                                              previous=previous.status.value,
                                              payment_status=updated.payment.status.value,
                                              actor=actor)
        self.dispatcher.status_changed(updated)
        return updated
