"""Pytest fixtures for the orders service tests."""

import hashlib

import pytest

from orders.service import CheckoutUrls, OrderService
from payments.config import GatewayConfig
from payments.payu_gateway import GatewaySigner, GatewayVerifier, format_amount
from payments.reconciliation import ReconciliationHandler, ReconciliationRequest
from schemas.api_models import CreateOrderRequest
from services.notifier import (
    InMemoryNotificationRepository,
    LoggingEmailTransport,
    NotificationDispatcher,
    OrderNotifier,
)
from services.user_directory import InMemoryUserDirectory, Principal, Role, UserRecord
from storage.audit_log import InMemoryAuditLog
from storage.order_repository import InMemoryOrderRepository

CALLBACK_URL = "http://api.test/api/orders/payment/callback"


def make_users():
    return [
        UserRecord(id="user-1", first_name="Asha", last_name="Rao", email="asha@example.com", phone="9876543210"),
        UserRecord(id="user-2", first_name="Ben", last_name="Okafor", email="ben@example.com"),
        UserRecord(id="admin-1", first_name="Ada", last_name="Admin", email="ada@example.com", role=Role.ADMIN),
    ]


def order_payload(items=None, **overrides):
    address = {
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "zipCode": "560001",
        "country": "India",
    }
    payload = {
        "items": items if items is not None else [
            {
                "product": "prod-silk-scarf",
                "variant": {"color": "red", "size": "M", "sku": "SCARF-RED-M"},
                "quantity": 2,
                "price": "15000",
            }
        ],
        "shippingAddress": address,
        "billingAddress": address,
        "paymentMethod": "upi",
    }
    payload.update(overrides)
    return payload


def sign_response(config: GatewayConfig, fields: dict) -> dict:
    """Sign a gateway response the way PayU does (reverse hash)"""
    udfs = [fields.get(f"udf{i}", "") for i in range(10, 0, -1)]
    parts = [
        config.salt,
        fields["status"],
        *udfs,
        fields["email"],
        fields["firstname"],
        fields["productinfo"],
        fields["amount"],
        fields["txnid"],
        config.merchant_key,
    ]
    signed = dict(fields)
    signed["hash"] = hashlib.sha512("|".join(parts).encode("utf-8")).hexdigest()
    return signed


@pytest.fixture
def gateway_config():
    return GatewayConfig.sandbox()


@pytest.fixture
def signer(gateway_config):
    return GatewaySigner(gateway_config)


@pytest.fixture
def verifier(gateway_config):
    return GatewayVerifier(gateway_config)


@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def users():
    return InMemoryUserDirectory(make_users())


@pytest.fixture
def transport():
    return LoggingEmailTransport()


@pytest.fixture
def notifications():
    return InMemoryNotificationRepository()


@pytest.fixture
def notifier(transport, notifications):
    return OrderNotifier(transport=transport, repository=notifications)


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def order_service(repository, users, signer, dispatcher, audit):
    return OrderService(
        orders=repository,
        users=users,
        signer=signer,
        dispatcher=dispatcher,
        audit=audit,
        checkout_urls=CheckoutUrls(success_url=CALLBACK_URL, failure_url=CALLBACK_URL),
    )


@pytest.fixture
def reconciliation(repository, verifier, dispatcher, audit):
    return ReconciliationHandler(
        orders=repository,
        verifier=verifier,
        dispatcher=dispatcher,
        audit=audit,
    )


@pytest.fixture
def customer():
    return Principal(user_id="user-1")


@pytest.fixture
def other_customer():
    return Principal(user_id="user-2")


@pytest.fixture
def admin():
    return Principal(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def new_order():
    """Order creation payload as the storefront posts it"""
    return order_payload


@pytest.fixture
def order_request():
    return CreateOrderRequest.model_validate(order_payload())


@pytest.fixture
def place_order(order_service, customer):
    """Create an order through the service and return the created response"""
    async def _place(items=None, principal=None, **overrides):
        request = CreateOrderRequest.model_validate(order_payload(items, **overrides))
        return await order_service.create_order(principal or customer, request)
    return _place


@pytest.fixture
def sign(gateway_config):
    """Sign raw gateway fields, with the configured pair unless another is given"""
    def _sign(fields, config=None):
        return sign_response(config or gateway_config, fields)
    return _sign


@pytest.fixture
def gateway_response(gateway_config):
    """Build a correctly signed gateway response for an order"""
    def _build(order, status="success", amount=None, txnid=None, **extra):
        fields = {
            "status": status,
            "txnid": txnid or order.payment.gateway_order_id,
            "amount": amount if amount is not None else format_amount(order.total),
            "productinfo": "Luxury Store Order - 1 items",
            "firstname": order.customer.name,
            "email": order.customer.email,
            "udf1": order.id,
            "mihpayid": "403993715531077182",
            "mode": "UPI",
        }
        fields.update(extra)
        return sign_response(gateway_config, fields)
    return _build


@pytest.fixture
def callback(reconciliation):
    """Run one delivery through the reconciliation handler"""
    async def _deliver(fields, channel="webhook"):
        return await reconciliation.handle(ReconciliationRequest(fields=fields, channel=channel))
    return _deliver
