"""Business logic services."""

from notifier.services.notification_service import (
    BulkCreateResult,
    BulkItemResult,
    NotificationService,
    Recipient,
)
from notifier.services.notification_store import NotificationStore

__all__ = [
    "BulkCreateResult",
    "BulkItemResult",
    "NotificationService",
    "NotificationStore",
    "Recipient",
]
