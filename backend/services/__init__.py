# services/__init__.py
# ============================================================================
# STOREFRONT ORDERS - SERVICES MODULE
# ============================================================================
# Collaborators the order flow calls out to: customer email and the user
# directory owned by the auth service
# ============================================================================

from services.notifier import (
    INotificationRepository,
    InMemoryNotificationRepository,
    NotificationDispatcher,
    NotifierConfig,
    OrderNotifier,
    build_transport,
)

from services.user_directory import (
    InMemoryUserDirectory,
    IUserDirectory,
    Principal,
    Role,
    UserRecord,
)

__all__ = [
    # Notifier
    "INotificationRepository",
    "InMemoryNotificationRepository",
    "NotificationDispatcher",
    "NotifierConfig",
    "OrderNotifier",
    "build_transport",
    # User directory
    "InMemoryUserDirectory",
    "IUserDirectory",
    "Principal",
    "Role",
    "UserRecord",
]
