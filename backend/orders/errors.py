"""
Order Service Errors
====================
Exception taxonomy for the order lifecycle and payment reconciliation flow.

Every error carries the HTTP status the API layer answers with, so transports
never need to know which exception means what.
"""

from typing import Optional


class OrderServiceError(Exception):
    """Base exception for all order/payment errors."""

    http_status: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(OrderServiceError):
    """Malformed input, rejected before any side effect."""

    http_status = 400

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        self.errors = errors or []
        super().__init__(message)


class Unauthorized(OrderServiceError):
    """No authenticated principal on the request."""

    http_status = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(OrderServiceError):
    """Authenticated, but not allowed to perform the action."""

    http_status = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidSignature(OrderServiceError):
    """Gateway payload failed reverse-hash verification."""

    http_status = 400

    def __init__(self, txnid: Optional[str] = None):
        self.txnid = txnid
        super().__init__("Invalid payment response")


class OrderNotFound(OrderServiceError):
    http_status = 404

    def __init__(self, order_id: Optional[str]):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class UserNotFound(OrderServiceError):
    http_status = 404

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class AmountMismatch(OrderServiceError):
    """Gateway reported an amount that does not match the order total."""

    http_status = 400

    def __init__(self, order_id: str, expected: str, received: str):
        self.order_id = order_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Payment amount mismatch for order {order_id}: "
            f"expected {expected}, received {received}"
        )


class InvalidStateTransition(OrderServiceError):
    """Requested transition is not allowed from the current state."""

    http_status = 400

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        self.current = current
        self.requested = requested
        msg = f"Cannot move order from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class ConcurrentModification(OrderServiceError):
    """Lost a compare-and-swap race and the retry budget is spent."""

    http_status = 409

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently, retry the request")
