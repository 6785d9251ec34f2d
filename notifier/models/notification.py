"""Notification model with per-channel delivery state."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from notifier.models.database import Base


class NotificationType(str, enum.Enum):
    """What the notification is about."""

    TASK_REMINDER = "task_reminder"
    MEETING_REMINDER = "meeting_reminder"
    DOCUMENT_ANALYSIS = "document_analysis"
    SYSTEM_UPDATE = "system_update"
    TASK_UPDATE = "task_update"
    CALENDAR_SYNC = "calendar_sync"
    GENERAL = "general"


class NotificationPriority(str, enum.Enum):
    """Priority level of a notification."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_ORDER: dict[NotificationPriority, int] = {
    NotificationPriority.URGENT: 4,
    NotificationPriority.HIGH: 3,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.LOW: 1,
}


class NotificationStatus(str, enum.Enum):
    """Overall delivery status."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Channel(str, enum.Enum):
    """Delivery channels. The set is closed."""

    WEB = "web"
    WECHAT = "wechat"
    EMAIL = "email"


# Per-channel columns share a common suffix set; web also tracks reads.
CHANNEL_FIELDS = ("enabled", "sent", "sent_at", "message_id", "error")


def channel_column(channel: Channel, field: str) -> str:
    """Return the column name holding ``field`` for ``channel``."""
    return f"{channel.value}_{field}"


class Notification(Base):
    """A notification addressed to one user, delivered over one or more channels."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_user_id", "created_at"),
        Index("ix_notifications_status_scheduled", "status", "scheduled_for"),
        Index("ix_notifications_status_next_retry", "status", "next_retry_at"),
        Index("ix_notifications_type_priority", "type", "priority"),
        Index("ix_notifications_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[str] = mapped_column(String(500), nullable=False)

    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    priority: Mapped[NotificationPriority] = mapped_column(
        Enum(NotificationPriority), default=NotificationPriority.NORMAL, nullable=False
    )
    # Numeric form of priority used for sweep ordering
    priority_rank: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False
    )

    # Recipient, denormalized so that rendering a push needs no join
    recipient_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient_username: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    recipient_wechat_open_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Web feed channel
    web_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    web_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    web_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    web_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    web_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    web_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    web_read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # WeChat push channel
    wechat_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    wechat_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    wechat_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    wechat_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    wechat_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Email channel
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    email_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Weak references to the originating business object (lookup only)
    related_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    related_meeting_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    related_document_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    related_calendar_event_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Retry accounting
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Metadata
    source: Mapped[str] = mapped_column(String(50), default="system", nullable=False)
    tags: Mapped[str | None] = mapped_column(String(500), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Dispatcher lease
    lease_owner: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, type={self.type.value}, "
            f"status={self.status.value}, retries={self.retry_count})>"
        )

    def get_tags_list(self) -> list[str]:
        """Get tags as a list."""
        if not self.tags:
            return []
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    def set_tags_list(self, tags: list[str]) -> None:
        """Set tags from a list."""
        self.tags = ",".join(tags) if tags else None

    def channel_value(self, channel: Channel, field: str) -> Any:
        """Read one field of a channel's sub-state."""
        return getattr(self, channel_column(channel, field))

    def channel_state(self, channel: Channel) -> dict[str, Any]:
        """All sub-state fields of one channel as a dict."""
        fields = list(CHANNEL_FIELDS)
        if channel == Channel.WEB:
            fields += ["read", "read_at"]
        return {f: self.channel_value(channel, f) for f in fields}

    def enabled_channels(self) -> list[Channel]:
        """Channels that should be delivered to."""
        return [ch for ch in Channel if self.channel_value(ch, "enabled")]

    def related_data(self) -> dict[str, str]:
        """Non-empty related object references."""
        refs = {
            "task_id": self.related_task_id,
            "meeting_id": self.related_meeting_id,
            "document_id": self.related_document_id,
            "calendar_event_id": self.related_calendar_event_id,
        }
        return {k: v for k, v in refs.items() if v}

    def is_expired(self, now: datetime) -> bool:
        """Whether the hard cutoff has passed."""
        return self.expires_at <= now

    def can_retry(self, max_retries: int) -> bool:
        """Whether a failed notification will be picked up by a retry sweep."""
        return (
            self.status == NotificationStatus.FAILED
            and self.retry_count < max_retries
            and self.next_retry_at is not None
        )
