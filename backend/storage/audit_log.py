# storage/audit_log.py
# ============================================================================
# AUDIT LOG - append-only trail of payment and order state changes
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from schemas.order_models import utcnow


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_UPDATED = "order.status_updated"
    ORDER_CANCELLED = "order.cancelled"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_REPLAYED = "payment.replayed"
    PAYMENT_SIGNATURE_INVALID = "payment.signature_invalid"
    PAYMENT_AMOUNT_MISMATCH = "payment.amount_mismatch"
    PAYMENT_REJECTED = "payment.rejected"
    PAYMENT_ACKNOWLEDGED = "payment.acknowledged"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "redirect", "webhook", "user", "admin"
    needs_review: bool = False


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_flagged(self, limit: int = 100) -> list[AuditLogEntry]:
        """Entries flagged for manual review, newest first"""
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._by_entity: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)
            self._by_entity[entry.entity_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_entity.get(entity_id, []))

    async def get_flagged(self, limit: int = 100) -> list[AuditLogEntry]:
        async with self._lock:
            flagged = [e for e in reversed(self._logs) if e.needs_review]
            return flagged[:limit]


async def emit_audit(
    audit: IAuditLog,
    event_type: AuditEventType,
    entity_type: str,
    entity_id: str,
    correlation_id: str,
    previous_state: Optional[dict] = None,
    new_state: Optional[dict] = None,
    metadata: Optional[dict] = None,
    actor: str = "system",
    needs_review: bool = False,
) -> AuditLogEntry:
    """Append an audit entry and mirror it to the structured log"""
    entry = AuditLogEntry(
        correlation_id=correlation_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        previous_state=previous_state,
        new_state=new_state,
        metadata=metadata or {},
        actor=actor,
        needs_review=needs_review,
    )
    await audit.append(entry)

    structlog.get_logger().bind(component="audit", correlation_id=correlation_id).info(
        "audit_event",
        event_type=event_type.value,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=actor,
        needs_review=needs_review,
    )
    return entry
