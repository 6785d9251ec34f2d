"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from notifier.models.notification import NotificationPriority, NotificationStatus, NotificationType


# Notification Schemas
class RecipientIn(BaseModel):
    """Notification recipient."""

    user_id: str
    username: str
    email: str | None = None
    wechat_open_id: str | None = None


class NotificationCreate(BaseModel):
    """Schema for creating a notification.

    Length limits, datetime ordering and channel names are checked by the
    service so that single and bulk creation report the same errors.
    """

    title: str
    content: str
    type: NotificationType
    recipient: RecipientIn
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    channels: dict[str, bool] | None = Field(
        default=None,
        description="Channel name to enabled flag, e.g. {\"email\": true}",
    )
    related_data: dict[str, str] | None = Field(
        default=None,
        description="Keys: task_id, meeting_id, document_id, calendar_event_id",
    )
    source: str | None = None
    tags: list[str] = Field(default_factory=list)


class BulkCreateRequest(BaseModel):
    """Request to create many notifications; items are validated one by one."""

    items: list[dict[str, Any]] = Field(..., min_length=1, max_length=500)


class BulkItemResponse(BaseModel):
    """Per-item result of a bulk create."""

    index: int
    success: bool
    notification_id: int | None = None
    errors: list[str] = Field(default_factory=list)


class BulkCreateResponse(BaseModel):
    """Response for bulk create."""

    results: list[BulkItemResponse]
    success_count: int
    failure_count: int


class ChannelView(BaseModel):
    """User-facing channel flags."""

    enabled: bool
    sent: bool
    read: bool | None = None
    read_at: datetime | None = None


class NotificationResponse(BaseModel):
    """Notification as seen by its recipient."""

    id: int
    title: str
    content: str
    type: NotificationType
    priority: NotificationPriority
    status: NotificationStatus
    channels: dict[str, ChannelView]
    related_data: dict[str, str]
    tags: list[str]
    scheduled_for: datetime
    expires_at: datetime
    created_at: datetime


class ChannelDetail(ChannelView):
    """Operator view of a channel, including transport details."""

    sent_at: datetime | None = None
    message_id: str | None = None
    error: str | None = None


class NotificationDetailResponse(NotificationResponse):
    """Operator view including retry counters and transport errors."""

    channels: dict[str, ChannelDetail]
    recipient: RecipientIn
    retry_count: int
    last_retry_at: datetime | None
    next_retry_at: datetime | None
    source: str
    user_agent: str | None
    client_ip: str | None
    updated_at: datetime


class NotificationListResponse(BaseModel):
    """Paginated list of notifications."""

    notifications: list[NotificationResponse]
    total: int
    page: int
    limit: int
    pages: int


class UnreadCountResponse(BaseModel):
    """Unread notification count."""

    unread_count: int


class NotificationStatistics(BaseModel):
    """Aggregate notification counters."""

    total: int
    unread: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_priority: dict[str, int]
    channels: dict[str, dict[str, int]]
    retrying: int
    terminally_failed: int


class MarkMultipleReadRequest(BaseModel):
    """Batch read request; omit IDs to mark everything read."""

    notification_ids: list[int] | None = None


class MarkMultipleReadResponse(BaseModel):
    """Batch read result."""

    updated: int


class ChannelReport(BaseModel):
    """Externally reported outcome of a channel send."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    retryable: bool = True


# Dispatcher Schemas
class SweepResponse(BaseModel):
    """Result of an on-demand sweep."""

    kind: str
    selected: int
    claimed: int
    sent: int
    failed: int
    disabled_channels: int
    exhausted: int
    skipped: int
    duration: float


class DispatchResponse(BaseModel):
    """Result of a forced single-notification dispatch."""

    notification_id: int
    attempted: bool
    status: NotificationStatus


class ReapResponse(BaseModel):
    """Result of an expiry reap."""

    removed: int


class DispatcherStatusResponse(BaseModel):
    """Dispatcher status."""

    is_running: bool
    instance_id: str
    started_at: datetime | None
    last_pending_sweep: datetime | None
    last_retry_sweep: datetime | None
    last_reap: datetime | None
    channels: list[str]
    session_stats: dict[str, int]
    retry_policy: dict[str, float]


# Health Schemas
class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
