# storage/order_repository.py
# ============================================================================
# ORDER PERSISTENCE - INTERFACE + IN-MEMORY IMPLEMENTATION
# ============================================================================
# Writes after creation are conditional: the caller names the version it read
# (and optionally the payment status it expects) and the write only lands if
# both still hold. The PostgreSQL implementation lives in database.py.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from schemas.order_models import Order, OrderStatus, PaymentStatus


class IOrderRepository(ABC):
    """Order repository interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        updated: Order,
        expected_version: int,
        expected_payment_status: Optional[PaymentStatus] = None,
    ) -> bool:
        """
        Atomically replace the stored order with ``updated`` if the stored
        version equals ``expected_version`` and, when given, the stored payment
        status equals ``expected_payment_status``. Returns True if written.
        """
        pass

    @abstractmethod
    async def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> list[Order]:
        """Newest first"""
        pass

    @abstractmethod
    async def count(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
    ) -> int:
        pass


class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise KeyError(f"Order already exists: {order.id}")
            self._orders[order.id] = order
            return order

    async def compare_and_swap(
        self,
        updated: Order,
        expected_version: int,
        expected_payment_status: Optional[PaymentStatus] = None,
    ) -> bool:
        async with self._lock:
            current = self._orders.get(updated.id)
            if current is None or current.version != expected_version:
                return False
            if expected_payment_status is not None and current.payment.status != expected_payment_status:
                return False
            self._orders[updated.id] = updated
            return True

    def _matching(self, user_id: Optional[str], status: Optional[OrderStatus]) -> list[Order]:
        return [
            o for o in self._orders.values()
            if (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
        ]

    async def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> list[Order]:
        async with self._lock:
            # reversed first so equal timestamps still come back newest first
            orders = sorted(reversed(self._matching(user_id, status)), key=lambda o: o.created_at, reverse=True)
            return orders[skip:skip + limit]

    async def count(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
    ) -> int:
        async with self._lock:
            return len(self._matching(user_id, status))
