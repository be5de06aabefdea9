# api/server.py
# ============================================================================
# STOREFRONT ORDERS API - FASTAPI SERVER
# ============================================================================
# Order creation, order queries, admin status updates, cancellation, and the
# two PayU entry points (browser redirect + server-to-server webhook) that
# share one reconciliation handler.
# ============================================================================

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from database import (
    Database,
    PostgresAuditLog,
    PostgresNotificationRepository,
    PostgresOrderRepository,
    PostgresUserDirectory,
)
from orders.errors import OrderServiceError, Unauthorized, ValidationError
from orders.service import CheckoutUrls, OrderService
from payments.config import GatewayConfig
from payments.payu_gateway import GatewaySigner, GatewayVerifier
from payments.reconciliation import ReconciliationHandler, ReconciliationOutcome, ReconciliationRequest
from schemas.api_models import (
    CreateOrderRequest,
    CreateOrderResponse,
    ErrorResponse,
    HealthResponse,
    OrderListResponse,
    OrderResponse,
    PaymentResultResponse,
    UpdateOrderStatusRequest,
)
from schemas.order_models import OrderStatus, utcnow
from services.notifier import NotificationDispatcher, NotifierConfig, OrderNotifier, build_transport
from services.user_directory import InMemoryUserDirectory, IUserDirectory, Principal, Role
from storage.audit_log import IAuditLog, InMemoryAuditLog
from storage.order_repository import InMemoryOrderRepository, IOrderRepository

VERSION = "1.0.0"
CALLBACK_PATH = "/api/orders/payment/callback"


# ============================================================================
# LOGGING
# ============================================================================

def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """JSON lines in production, readable console output otherwise"""
    renderer = (
        structlog.processors.JSONRenderer()
        if env == "production"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger().bind(component="server")


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class ServerConfig:
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"
    order_store: str = "memory"  # "memory" | "postgres"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        origins = os.getenv("CORS_ORIGINS", "*")
        store = os.getenv("ORDER_STORE", "memory").lower()
        if store not in ("memory", "postgres"):
            raise ValueError(f"ORDER_STORE must be 'memory' or 'postgres', got {store!r}")
        return cls(
            env=os.getenv("ENV", "development"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            api_base_url=os.getenv("API_BASE_URL", "http://localhost:8000").rstrip("/"),
            order_store=store,
        )

    @property
    def callback_url(self) -> str:
        return f"{self.api_base_url}{CALLBACK_PATH}"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class OrderServices:
    """Everything the routes need, built once per process"""
    orders: OrderService
    reconciliation: ReconciliationHandler
    dispatcher: NotificationDispatcher
    audit: IAuditLog
    gateway: GatewayConfig
    order_store: str = "memory"
    database: Optional[Database] = None


def build_services(
    config: ServerConfig,
    gateway: GatewayConfig,
    repository: IOrderRepository,
    users: IUserDirectory,
    audit: IAuditLog,
    notifier: Optional[OrderNotifier] = None,
) -> OrderServices:
    notifier = notifier or OrderNotifier()
    dispatcher = NotificationDispatcher(notifier)
    order_service = OrderService(
        orders=repository,
        users=users,
        signer=GatewaySigner(gateway),
        dispatcher=dispatcher,
        audit=audit,
        checkout_urls=CheckoutUrls(success_url=config.callback_url, failure_url=config.callback_url),
        store_name=notifier.config.company_name,
    )
    reconciliation = ReconciliationHandler(
        orders=repository,
        verifier=GatewayVerifier(gateway),
        dispatcher=dispatcher,
        audit=audit,
    )
    return OrderServices(
        orders=order_service,
        reconciliation=reconciliation,
        dispatcher=dispatcher,
        audit=audit,
        gateway=gateway,
        order_store=config.order_store,
    )


async def _services_from_env(config: ServerConfig) -> OrderServices:
    gateway = GatewayConfig.from_env()
    notifier_config = NotifierConfig.from_env()
    transport = build_transport(notifier_config)

    if config.order_store == "postgres":
        db = await Database.connect()
        notifier = OrderNotifier(transport, notifier_config, PostgresNotificationRepository(db))
        services = build_services(
            config, gateway, PostgresOrderRepository(db), PostgresUserDirectory(db), PostgresAuditLog(db), notifier
        )
        services.database = db
        return services

    notifier = OrderNotifier(transport, notifier_config)
    return build_services(
        config, gateway, InMemoryOrderRepository(), InMemoryUserDirectory(), InMemoryAuditLog(), notifier
    )


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(config: Optional[ServerConfig] = None, services: Optional[OrderServices] = None) -> FastAPI:
    config = config or ServerConfig.from_env()
    configure_logging(config.env)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        app.state.started_at = utcnow()
        app.state.services = services or await _services_from_env(config)
        logger.info("server_started",
                    env=config.env,
                    order_store=app.state.services.order_store,
                    gateway_environment=app.state.services.gateway.environment)

        yield

        await app.state.services.dispatcher.drain()
        transport = app.state.services.dispatcher.notifier.transport
        if hasattr(transport, "close"):
            await transport.close()
        if app.state.services.database is not None:
            await app.state.services.database.close()
        logger.info("server_stopped")

    app = FastAPI(
        title="Storefront Orders API",
        description="Order lifecycle and PayU payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(OrderServiceError)
    async def order_error_handler(request: Request, exc: OrderServiceError):
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        body = ErrorResponse(
            detail=exc.message,
            error_type=type(exc).__name__,
            errors=getattr(exc, "errors", None) or None,
        )
        return JSONResponse(status_code=exc.http_status, content=body.model_dump(exclude_none=True))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        body = ErrorResponse(detail="Invalid request", error_type=ValidationError.__name__, errors=errors)
        return JSONResponse(status_code=400, content=body.model_dump())

    app.include_router(_routes(config))
    return app


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_services(request: Request) -> OrderServices:
    return request.app.state.services


def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Principal:
    """
    Caller identity as forwarded by the auth gateway.

    Deployments that terminate sessions in-process override this dependency.
    """
    if not x_user_id:
        raise Unauthorized("Authentication required")
    try:
        role = Role(x_user_role.lower()) if x_user_role else Role.CUSTOMER
    except ValueError:
        raise Unauthorized(f"Unknown role: {x_user_role}") from None
    return Principal(user_id=x_user_id, role=role)


async def _gateway_fields(request: Request) -> tuple[dict[str, Any], bool]:
    """Collect gateway fields from query, form or JSON; report whether JSON was sent"""
    fields: dict[str, Any] = dict(request.query_params)
    json_body = False
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("Malformed JSON body") from None
            if not isinstance(body, dict):
                raise ValidationError("Payment response must be an object")
            fields.update(body)
            json_body = True
        else:
            form = await request.form()
            fields.update({k: v for k, v in form.items() if isinstance(v, str)})
    wants_json = json_body or "application/json" in request.headers.get("accept", "")
    return fields, wants_json


def _payment_result(outcome: ReconciliationOutcome) -> PaymentResultResponse:
    return PaymentResultResponse(
        success=outcome.success,
        order_id=outcome.order_id,
        order=outcome.order,
        message=outcome.message,
        replayed=outcome.replayed,
    )


# ============================================================================
# ENDPOINTS
# ============================================================================

def _routes(config: ServerConfig):
    router = APIRouter()

    @router.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, services: OrderServices = Depends(get_services)):
        """Health check endpoint."""
        uptime = (utcnow() - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            environment=config.env,
            gateway_environment=services.gateway.environment,
            order_store=services.order_store,
            uptime_seconds=uptime,
        )

    # ------------------------------------------------------------------------
    # Gateway entry points
    # ------------------------------------------------------------------------

    async def _reconcile(
        request: Request,
        services: OrderServices,
        fields: dict[str, Any],
        channel: str,
    ) -> ReconciliationOutcome:
        return await services.reconciliation.handle(
            ReconciliationRequest(
                fields=fields,
                channel=channel,
                correlation_id=request.headers.get("X-Correlation-Id") or str(uuid.uuid4()),
            )
        )

    @router.api_route(CALLBACK_PATH, methods=["GET", "POST"])
    async def payment_callback(request: Request, services: OrderServices = Depends(get_services)):
        """
        Browser return from the hosted checkout.

        Redirects to the storefront's success/failure page carrying only the
        order id, unless the caller asked for JSON.
        """
        fields, wants_json = await _gateway_fields(request)
        outcome = await _reconcile(request, services, fields, "redirect")
        if wants_json:
            return JSONResponse(content=_payment_result(outcome).model_dump(mode="json", by_alias=True))

        page = "success" if outcome.success else "failure"
        return RedirectResponse(
            url=f"{config.frontend_url}/checkout/{page}?orderId={quote(outcome.order_id)}",
            status_code=303,
        )

    @router.post("/api/orders/payment/webhook")
    async def payment_webhook(request: Request, services: OrderServices = Depends(get_services)):
        """Server-to-server notification; always answered with JSON."""
        fields, _ = await _gateway_fields(request)
        outcome = await _reconcile(request, services, fields, "webhook")
        return JSONResponse(content=_payment_result(outcome).model_dump(mode="json", by_alias=True))

    # ------------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------------

    @router.post("/api/orders", response_model=CreateOrderResponse, status_code=201)
    async def create_order(
        body: CreateOrderRequest,
        principal: Principal = Depends(get_principal),
        services: OrderServices = Depends(get_services),
    ):
        return await services.orders.create_order(principal, body)

    @router.get("/api/orders", response_model=OrderListResponse)
    async def list_orders(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        status: Optional[OrderStatus] = None,
        principal: Principal = Depends(get_principal),
        services: OrderServices = Depends(get_services),
    ):
        return await services.orders.list_orders(principal, page=page, limit=limit, status=status)

    @router.get("/api/orders/{order_id}", response_model=OrderResponse)
    async def get_order(
        order_id: str,
        principal: Principal = Depends(get_principal),
        services: OrderServices = Depends(get_services),
    ):
        return OrderResponse(order=await services.orders.get_order(principal, order_id))

    @router.patch("/api/orders/{order_id}/status", response_model=OrderResponse)
    async def update_order_status(
        order_id: str,
        body: UpdateOrderStatusRequest,
        principal: Principal = Depends(get_principal),
        services: OrderServices = Depends(get_services),
    ):
        order = await services.orders.update_status(principal, order_id, body.status, notes=body.notes)
        return OrderResponse(message="Order status updated successfully", order=order)

    @router.patch("/api/orders/{order_id}/cancel", response_model=OrderResponse)
    async def cancel_order(
        order_id: str,
        principal: Principal = Depends(get_principal),
        services: OrderServices = Depends(get_services),
    ):
        order = await services.orders.cancel_order(principal, order_id)
        return OrderResponse(message="Order cancelled successfully", order=order)

    return router


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    server_config = ServerConfig.from_env()
    configure_logging(server_config.env)
    uvicorn.run(
        "api.server:app",
        host=server_config.host,
        port=server_config.port,
        reload=server_config.env == "development",
        log_level="info",
    )
