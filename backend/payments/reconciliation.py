"""
Payment Reconciliation
======================
One operation behind both gateway entry points (browser redirect and
server-to-server webhook). The gateway may deliver the same event through
either route, more than once, in any order; each real payment event changes
the order exactly once and notifies the customer exactly once.

Flow:
1. parse + verify the reverse hash (nothing is trusted before this)
2. resolve the order from udf1
3. reconcile the amount (|expected - received| < 0.01)
4. replay check: same txnid already settled -> return the stored verdict
   a failed payment for an order cancelled meanwhile is acknowledged as is
5. conditional write on (version, payment pending); on a lost race re-read
   and go back to 4
6. audit, then notify in the background
"""

import uuid
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from orders.errors import (
    AmountMismatch,
    ConcurrentModification,
    InvalidSignature,
    InvalidStateTransition,
    OrderNotFound,
)
from payments.payu_gateway import (
    UNKNOWN_FAILURE,
    GatewayResponse,
    GatewayVerifier,
    amounts_match,
    format_amount,
)
from schemas.order_models import SETTLED_PAYMENT, Order, OrderStatus, PaymentStatus
from services.notifier import NotificationDispatcher
from storage.audit_log import AuditEventType, IAuditLog, emit_audit
from storage.order_repository import IOrderRepository

SUCCESS_MESSAGE = "Payment verified successfully"

Channel = Literal["redirect", "webhook"]


class ReconciliationRequest(BaseModel):
    """Transport-neutral gateway callback"""
    fields: dict[str, Any]
    channel: Channel = "webhook"
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class ReconciliationOutcome(BaseModel):
    success: bool
    order_id: str
    order: Order
    message: str
    replayed: bool = False


class ReconciliationHandler:
    """Applies verified gateway outcomes to orders, idempotently"""

    def __init__(
        self,
        orders: IOrderRepository,
        verifier: GatewayVerifier,
        dispatcher: NotificationDispatcher,
        audit: IAuditLog,
        max_write_attempts: int = 3,
    ):
        self.orders = orders
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.audit = audit
        self.max_write_attempts = max_write_attempts
        self._base_logger = structlog.get_logger()

    async def handle(self, request: ReconciliationRequest) -> ReconciliationOutcome:
        log = self._base_logger.bind(
            component="reconciliation",
            correlation_id=request.correlation_id,
            channel=request.channel,
        )

        response = await self._verify(request)
        log = log.bind(txnid=response.txnid, order_id=response.order_id or None)

        order_id = response.order_id
        order = await self.orders.get(order_id) if order_id else None
        if order is None:
            log.warning("payment_order_not_found")
            raise OrderNotFound(order_id or None)

        await self._check_amount(request, order, response, log)

        for _ in range(self.max_write_attempts):
            if self._is_replay(order, response):
                return await self._replay(request, order, response, log)
            if self._is_moot_failure(order, response):
                return await self._acknowledge(request, order, response, log)

            updated = await self._apply(request, order, response, log)
            written = await self.orders.compare_and_swap(
                updated,
                expected_version=order.version,
                expected_payment_status=PaymentStatus.PENDING,
            )
            if written:
                return await self._settled(request, order, updated, response, log)

            log.info("payment_write_conflict", version=order.version)
            order = await self.orders.get(order_id)
            if order is None:
                raise OrderNotFound(order_id)

        raise ConcurrentModification(order_id)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _verify(self, request: ReconciliationRequest) -> GatewayResponse:
        try:
            return self.verifier.verify(request.fields)
        except InvalidSignature as e:
            await emit_audit(
                self.audit,
                event_type=AuditEventType.PAYMENT_SIGNATURE_INVALID,
                entity_type="payment",
                entity_id=str(request.fields.get("udf1") or e.txnid or "unknown"),
                correlation_id=request.correlation_id,
                metadata={"txnid": e.txnid, "status": request.fields.get("status")},
                actor=request.channel,
                needs_review=True,
            )
            raise

    async def _check_amount(self, request, order: Order, response: GatewayResponse, log) -> None:
        received = response.amount_value
        if amounts_match(order.total, received):
            return

        expected = format_amount(order.total)
        log.error("payment_amount_mismatch", expected=expected, received=response.amount)
        await emit_audit(
            self.audit,
            event_type=AuditEventType.PAYMENT_AMOUNT_MISMATCH,
            entity_type="payment",
            entity_id=order.id,
            correlation_id=request.correlation_id,
            previous_state=self._state(order),
            metadata={"expected": expected, "received": response.amount, "txnid": response.txnid},
            actor=request.channel,
            needs_review=True,
        )
        raise AmountMismatch(order.id, expected, response.amount)

    @staticmethod
    def _is_replay(order: Order, response: GatewayResponse) -> bool:
        return (
            order.payment.status in SETTLED_PAYMENT
            and order.payment.transaction_id == response.txnid
        )

    def _is_moot_failure(self, order: Order, response: GatewayResponse) -> bool:
        """Failed payment for an order already cancelled: nothing left to change"""
        return (
            not self.verifier.is_successful(response)
            and order.status == OrderStatus.CANCELLED
            and order.payment.status == PaymentStatus.PENDING
        )

    async def _apply(self, request, order: Order, response: GatewayResponse, log) -> Order:
        try:
            if self.verifier.is_successful(response):
                return order.record_payment_success(
                    transaction_id=response.txnid,
                    gateway_payment_id=response.mihpayid,
                    raw_response=response.redacted(),
                )
            return order.record_payment_failure(
                transaction_id=response.txnid,
                reason=self.verifier.failure_reason(response),
                raw_response=response.redacted(),
            )
        except InvalidStateTransition as e:
            log.warning("payment_rejected",
                        order_status=order.status.value,
                        payment_status=order.payment.status.value,
                        gateway_status=response.status,
                        reason=e.message)
            await emit_audit(
                self.audit,
                event_type=AuditEventType.PAYMENT_REJECTED,
                entity_type="payment",
                entity_id=order.id,
                correlation_id=request.correlation_id,
                previous_state=self._state(order),
                metadata={
                    "txnid": response.txnid,
                    "gateway_status": response.status,
                    "stored_txnid": order.payment.transaction_id,
                    "reason": e.message,
                },
                actor=request.channel,
                needs_review=True,
            )
            raise

    async def _settled(self, request, previous: Order, order: Order, response: GatewayResponse, log):
        success = order.payment.status == PaymentStatus.COMPLETED
        await emit_audit(
            self.audit,
            event_type=AuditEventType.PAYMENT_CONFIRMED if success else AuditEventType.PAYMENT_FAILED,
            entity_type="payment",
            entity_id=order.id,
            correlation_id=request.correlation_id,
            previous_state=self._state(previous),
            new_state=self._state(order),
            metadata={
                "txnid": response.txnid,
                "mihpayid": response.mihpayid,
                "amount": response.amount,
                "gateway_status": response.status,
            },
            actor=request.channel,
        )

        if success:
            log.info("payment_confirmed", mihpayid=response.mihpayid, amount=response.amount)
            self.dispatcher.payment_confirmed(order)
            message = SUCCESS_MESSAGE
        else:
            log.info("payment_failed", gateway_status=response.status, reason=order.payment.failure_reason)
            self.dispatcher.payment_failed(order, order.payment.failure_reason)
            message = order.payment.failure_reason

        return ReconciliationOutcome(success=success, order_id=order.id, order=order, message=message)

    async def _replay(self, request, order: Order, response: GatewayResponse, log):
        """Duplicate delivery: report the stored verdict, change nothing"""
        raw = order.payment.gateway_raw_response or {}
        success = raw.get("status") == "success"
        message = SUCCESS_MESSAGE if success else (order.payment.failure_reason or UNKNOWN_FAILURE)

        log.info("payment_replayed", payment_status=order.payment.status.value)
        await emit_audit(
            self.audit,
            event_type=AuditEventType.PAYMENT_REPLAYED,
            entity_type="payment",
            entity_id=order.id,
            correlation_id=request.correlation_id,
            new_state=self._state(order),
            metadata={"txnid": response.txnid, "gateway_status": response.status},
            actor=request.channel,
        )
        return ReconciliationOutcome(
            success=success,
            order_id=order.id,
            order=order,
            message=message,
            replayed=True,
        )

    async def _acknowledge(self, request, order: Order, response: GatewayResponse, log):
        """Answer the gateway so it stops retrying; the cancelled order stays as is"""
        reason = self.verifier.failure_reason(response)
        log.info("payment_failure_after_cancel", gateway_status=response.status, reason=reason)
        await emit_audit(
            self.audit,
            event_type=AuditEventType.PAYMENT_ACKNOWLEDGED,
            entity_type="payment",
            entity_id=order.id,
            correlation_id=request.correlation_id,
            new_state=self._state(order),
            metadata={"txnid": response.txnid, "gateway_status": response.status, "reason": reason},
            actor=request.channel,
        )
        return ReconciliationOutcome(success=False, order_id=order.id, order=order, message=reason)

    @staticmethod
    def _state(order: Order) -> dict[str, Optional[str]]:
        return {
            "status": order.status.value,
            "payment_status": order.payment.status.value,
            "version": str(order.version),
        }
