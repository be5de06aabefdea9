# storage/__init__.py
# ============================================================================
# STOREFRONT ORDERS - STORAGE MODULE
# ============================================================================
# Order repository and audit trail (in-memory implementations; PostgreSQL
# lives in database.py)
# ============================================================================

from storage.audit_log import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    InMemoryAuditLog,
    emit_audit,
)

from storage.order_repository import (
    InMemoryOrderRepository,
    IOrderRepository,
)

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "InMemoryAuditLog",
    "emit_audit",
    "InMemoryOrderRepository",
    "IOrderRepository",
]
