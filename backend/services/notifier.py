"""
Order Notifier
==============
Transactional emails for the order lifecycle:
- Order confirmation (payment completed)
- Payment failure
- Status updates (processing, shipped, delivered, cancelled, refunded)

Emails are rendered here and handed to a transport (log-only or SendGrid).
Callers go through NotificationDispatcher, which runs each send in the
background and only logs failures; an email problem never fails an order
operation. Every send is tracked as a NotificationRecord in an
INotificationRepository (bounded in memory, or PostgreSQL).

pip install httpx structlog
"""

import asyncio
import html
import os
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from schemas.order_models import Order, PaymentStatus, utcnow

logger = structlog.get_logger().bind(component="notifier")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class NotifierConfig:
    """Email configuration"""
    transport: str = "log"  # "log" | "sendgrid"
    sendgrid_api_key: str = ""
    sendgrid_url: str = "https://api.sendgrid.com/v3/mail/send"
    from_email: str = "orders@example.com"
    company_name: str = "Luxury Store"
    support_email: str = "support@example.com"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "NotifierConfig":
        from_email = os.getenv("EMAIL_FROM", "orders@example.com")
        return cls(
            transport=os.getenv("EMAIL_TRANSPORT", "log").lower(),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
            from_email=from_email,
            company_name=os.getenv("COMPANY_NAME", "Luxury Store"),
            support_email=os.getenv("SUPPORT_EMAIL", from_email),
            timeout_seconds=float(os.getenv("EMAIL_TIMEOUT", "10.0")),
        )


# =============================================================================
# MODELS
# =============================================================================

class NotificationType(str, Enum):
    ORDER_CONFIRMED = "order_confirmed"
    PAYMENT_FAILED = "payment_failed"
    STATUS_UPDATE = "status_update"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: str


class NotificationRecord(BaseModel):
    """Email notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    notification_type: NotificationType
    recipient_email: str
    subject: str
    message_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


STATUS_MESSAGES = {
    "confirmed": "Your payment was received and your order is confirmed.",
    "processing": "Your order is being prepared for shipment.",
    "shipped": "Your order has been shipped and is on its way to you.",
    "delivered": "Your order has been delivered successfully.",
    "cancelled": "Your order has been cancelled.",
    "refunded": "Your order has been refunded.",
}


# =============================================================================
# DELIVERY TRACKING
# =============================================================================

class INotificationRepository(ABC):
    """Notification tracking interface"""

    @abstractmethod
    async def save(self, record: NotificationRecord) -> NotificationRecord:
        """Insert or replace by notification_id"""
        pass

    @abstractmethod
    async def get_by_order(self, order_id: str) -> list[NotificationRecord]:
        pass

    @abstractmethod
    async def recent(self, limit: int = 100) -> list[NotificationRecord]:
        """Latest records, oldest first"""
        pass


class InMemoryNotificationRepository(INotificationRepository):
    """Bounded notification tracking; the oldest records are evicted first"""

    def __init__(self, max_records: int = 1000):
        self._records: OrderedDict[str, NotificationRecord] = OrderedDict()
        self._max_records = max_records
        self._lock = asyncio.Lock()

    async def save(self, record: NotificationRecord) -> NotificationRecord:
        async with self._lock:
            self._records[record.notification_id] = record
            while len(self._records) > self._max_records:
                self._records.popitem(last=False)
            return record

    async def get_by_order(self, order_id: str) -> list[NotificationRecord]:
        async with self._lock:
            return [r for r in self._records.values() if r.order_id == order_id]

    async def recent(self, limit: int = 100) -> list[NotificationRecord]:
        async with self._lock:
            return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)


# =============================================================================
# TRANSPORTS
# =============================================================================

class IEmailTransport(ABC):
    """Email transport interface"""

    @abstractmethod
    async def send(self, message: EmailMessage) -> str:
        """Send and return the provider message id"""
        pass


class LoggingEmailTransport(IEmailTransport):
    """Writes emails to the log and keeps them in memory (development, tests)"""

    def __init__(self):
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> str:
        self.sent.append(message)
        message_id = f"log-{uuid.uuid4().hex[:16]}"
        logger.info("email_logged", to=message.to, subject=message.subject, message_id=message_id)
        return message_id


class SendGridEmailTransport(IEmailTransport):
    """SendGrid v3 mail/send over httpx"""

    def __init__(self, config: NotifierConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.sendgrid_api_key:
            raise ValueError("SENDGRID_API_KEY must be set for the sendgrid transport")
        self._config = config
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout_seconds,
            headers={"Authorization": f"Bearer {config.sendgrid_api_key}"},
        )

    async def send(self, message: EmailMessage) -> str:
        response = await self._client.post(
            self._config.sendgrid_url,
            json={
                "personalizations": [{"to": [{"email": message.to}]}],
                "from": {"email": self._config.from_email, "name": self._config.company_name},
                "subject": message.subject,
                "content": [
                    {"type": "text/plain", "value": message.text},
                    {"type": "text/html", "value": message.html},
                ],
            },
        )
        response.raise_for_status()
        return response.headers.get("X-Message-Id", "")

    async def close(self):
        await self._client.aclose()


def build_transport(config: NotifierConfig) -> IEmailTransport:
    if config.transport == "sendgrid":
        return SendGridEmailTransport(config)
    return LoggingEmailTransport()


# =============================================================================
# RENDERING
# =============================================================================

def _money(value) -> str:
    return f"{value:.2f}"


def _address_lines(order: Order) -> str:
    a = order.shipping_address
    return f"{a.street}\n{a.city}, {a.state} {a.zip_code}\n{a.country}"


class EmailRenderer:
    """Renders subject, HTML and plain-text bodies for each notification"""

    def __init__(self, config: NotifierConfig):
        self._config = config

    def _wrap(self, order: Order, heading: str, body_html: str) -> str:
        year = utcnow().year
        return (
            f"<h2>{html.escape(heading)}</h2>"
            f"<p>Hi {html.escape(order.customer.name or 'Customer')},</p>"
            f"{body_html}"
            f"<p>Questions? Contact {html.escape(self._config.support_email)}.</p>"
            f"<p>&copy; {year} {html.escape(self._config.company_name)}</p>"
        )

    def order_confirmation(self, order: Order) -> EmailMessage:
        rows = "".join(
            f"<tr><td>{html.escape(item.product_ref)} ({html.escape(item.variant.sku)})</td>"
            f"<td>{item.quantity}</td>"
            f"<td style=\"text-align:right\">{_money(item.unit_price * item.quantity)}</td></tr>"
            for item in order.items
        )
        totals = (
            f"<tr><td colspan=\"2\">Subtotal</td><td style=\"text-align:right\">{_money(order.subtotal)}</td></tr>"
            f"<tr><td colspan=\"2\">Tax</td><td style=\"text-align:right\">{_money(order.tax)}</td></tr>"
            f"<tr><td colspan=\"2\">Shipping</td><td style=\"text-align:right\">{_money(order.shipping_cost)}</td></tr>"
            f"<tr><td colspan=\"2\"><strong>Total</strong></td>"
            f"<td style=\"text-align:right\"><strong>{_money(order.total)}</strong></td></tr>"
        )
        body = (
            f"<p>Thank you for your order {order.order_number}.</p>"
            f"<table>{rows}{totals}</table>"
            f"<p>Shipping to:<br>{html.escape(_address_lines(order)).replace(chr(10), '<br>')}</p>"
        )
        text = "\n".join([
            f"Thank you for your order {order.order_number}.",
            *(f"- {item.product_ref} x{item.quantity}: {_money(item.unit_price * item.quantity)}"
              for item in order.items),
            f"Subtotal: {_money(order.subtotal)}",
            f"Tax: {_money(order.tax)}",
            f"Shipping: {_money(order.shipping_cost)}",
            f"Total: {_money(order.total)}",
            "",
            "Shipping to:",
            _address_lines(order),
        ])
        return EmailMessage(
            to=order.customer.email,
            subject=f"Order Confirmation - {order.order_number}",
            html=self._wrap(order, "Order confirmed", body),
            text=text,
        )

    def payment_failed(self, order: Order, reason: str) -> EmailMessage:
        body = (
            f"<p>We could not complete the payment for order {order.order_number}.</p>"
            f"<p>{html.escape(reason)}</p>"
        )
        return EmailMessage(
            to=order.customer.email,
            subject=f"Payment Failed - {order.order_number}",
            html=self._wrap(order, "Payment failed", body),
            text=f"We could not complete the payment for order {order.order_number}.\n{reason}",
        )

    def status_update(self, order: Order) -> EmailMessage:
        status = order.status.value
        if order.payment.status == PaymentStatus.REFUNDED:
            status = PaymentStatus.REFUNDED.value
        message = STATUS_MESSAGES.get(status, f"Your order status is now {status}.")
        body = f"<p>Order {order.order_number}: <strong>{html.escape(status)}</strong></p><p>{message}</p>"
        return EmailMessage(
            to=order.customer.email,
            subject=f"Order Update - {order.order_number}",
            html=self._wrap(order, "Order update", body),
            text=f"Order {order.order_number}: {status}\n{message}",
        )


# =============================================================================
# NOTIFIER
# =============================================================================

class OrderNotifier:
    """Renders and sends order emails; raises if the transport fails"""

    def __init__(
        self,
        transport: Optional[IEmailTransport] = None,
        config: Optional[NotifierConfig] = None,
        repository: Optional[INotificationRepository] = None,
    ):
        self.config = config or NotifierConfig()
        self.transport = transport or LoggingEmailTransport()
        self.renderer = EmailRenderer(self.config)
        self.repository = repository or InMemoryNotificationRepository()

    async def on_payment_confirmed(self, order: Order) -> NotificationRecord:
        return await self._send(order, NotificationType.ORDER_CONFIRMED, self.renderer.order_confirmation(order))

    async def on_payment_failed(self, order: Order, reason: str) -> NotificationRecord:
        return await self._send(order, NotificationType.PAYMENT_FAILED, self.renderer.payment_failed(order, reason))

    async def on_status_changed(self, order: Order) -> NotificationRecord:
        return await self._send(order, NotificationType.STATUS_UPDATE, self.renderer.status_update(order))

    async def _send(
        self,
        order: Order,
        notification_type: NotificationType,
        message: EmailMessage,
    ) -> NotificationRecord:
        record = NotificationRecord(
            order_id=order.id,
            notification_type=notification_type,
            recipient_email=message.to,
            subject=message.subject,
        )
        await self.repository.save(record)

        try:
            record.message_id = await self.transport.send(message)
        except Exception as e:
            record.status = DeliveryStatus.FAILED
            record.last_error = str(e)
            await self.repository.save(record)
            raise

        record.status = DeliveryStatus.SENT
        record.sent_at = utcnow()
        await self.repository.save(record)
        logger.info("notification_sent",
                    order_id=order.id,
                    notification_type=notification_type.value,
                    message_id=record.message_id)
        return record


# =============================================================================
# FIRE-AND-FORGET DISPATCH
# =============================================================================

class NotificationDispatcher:
    """
    Runs notifier calls as background tasks. Failures are logged and dropped.

    ``drain()`` waits for everything in flight (shutdown, tests).
    """

    def __init__(self, notifier: Any):
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, send: Callable[..., Awaitable[Any]], order: Order, *args: Any) -> asyncio.Task:
        task = asyncio.create_task(self._run(send, order, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def payment_confirmed(self, order: Order) -> asyncio.Task:
        return self.dispatch(self.notifier.on_payment_confirmed, order)

    def payment_failed(self, order: Order, reason: str) -> asyncio.Task:
        return self.dispatch(self.notifier.on_payment_failed, order, reason)

    def status_changed(self, order: Order) -> asyncio.Task:
        return self.dispatch(self.notifier.on_status_changed, order)

    async def _run(self, send: Callable[..., Awaitable[Any]], order: Order, *args: Any) -> None:
        try:
            await send(order, *args)
        except Exception as e:
            logger.error("notification_failed",
                         order_id=order.id,
                         handler=getattr(send, "__name__", repr(send)),
                         error=str(e),
                         error_type=type(e).__name__)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
