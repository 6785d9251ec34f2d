"""Data models."""

from notifier.models.database import Base, get_db, get_db_session, init_db
from notifier.models.notification import (
    PRIORITY_ORDER,
    Channel,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)

__all__ = [
    "Base",
    "Channel",
    "Notification",
    "NotificationPriority",
    "NotificationStatus",
    "NotificationType",
    "PRIORITY_ORDER",
    "get_db",
    "get_db_session",
    "init_db",
]
