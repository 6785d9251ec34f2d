"""Notification service with business logic for creating and managing notifications."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from notifier.delivery.policy import RetryPolicy
from notifier.delivery.state import (
    initial_status,
    mark_channel_failed,
    mark_channel_sent,
    mark_delivered,
    mark_read,
    snapshot_of,
)
from notifier.exceptions import NotificationNotFoundError, NotificationValidationError, StoreUnavailable
from notifier.models.notification import (
    PRIORITY_ORDER,
    Channel,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from notifier.services.notification_store import NotificationStore
from notifier.utils.config import Config, get_config
from notifier.utils.timeutil import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
MAX_CONTENT_LENGTH = 500

RELATED_FIELDS = {
    "task_id": "related_task_id",
    "meeting_id": "related_meeting_id",
    "document_id": "related_document_id",
    "calendar_event_id": "related_calendar_event_id",
}

CREATE_FIELDS = (
    "title",
    "content",
    "type",
    "recipient",
    "priority",
    "scheduled_for",
    "expires_at",
    "channels",
    "related_data",
    "source",
    "tags",
)


@dataclass
class Recipient:
    """Who a notification is addressed to."""

    user_id: str
    username: str
    email: str | None = None
    wechat_open_id: str | None = None


@dataclass
class BulkItemResult:
    """Outcome of creating one item of a bulk request."""

    index: int
    success: bool
    notification_id: int | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class BulkCreateResult:
    """Outcome of a bulk create; partial success is expected."""

    results: list[BulkItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


def _coerce_datetime(value: Any, name: str, errors: list[str]) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str):
        try:
            return to_naive_utc(datetime.fromisoformat(value))
        except ValueError:
            pass
    errors.append(f"{name} must be an ISO 8601 datetime")
    return None


def _coerce_recipient(value: Any, errors: list[str]) -> Recipient | None:
    if value is None:
        errors.append("recipient is required")
        return None
    if isinstance(value, Recipient):
        recipient = value
    elif isinstance(value, dict):
        recipient = Recipient(
            user_id=str(value.get("user_id") or "").strip(),
            username=str(value.get("username") or "").strip(),
            email=value.get("email") or None,
            wechat_open_id=value.get("wechat_open_id") or None,
        )
    else:
        errors.append("recipient must be an object")
        return None

    if not recipient.user_id:
        errors.append("recipient.user_id is required")
    if not recipient.username:
        errors.append("recipient.username is required")
    return recipient


class NotificationService:
    """Service for notification management operations."""

    def __init__(
        self,
        db: Session,
        config: Config | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.config = config or get_config()
        self.store = NotificationStore(db)
        self.policy = RetryPolicy.from_config(self.config.retry)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # --- Creation ---

    def create_notification(
        self,
        *,
        title: str | None,
        content: str | None,
        type: NotificationType | str | None,
        recipient: Recipient | dict[str, Any] | None,
        priority: NotificationPriority | str | None = None,
        scheduled_for: datetime | str | None = None,
        expires_at: datetime | str | None = None,
        channels: dict[str, bool] | None = None,
        related_data: dict[str, Any] | None = None,
        source: str | None = None,
        tags: list[str] | None = None,
        user_agent: str | None = None,
        client_ip: str | None = None,
    ) -> Notification:
        """Validate and persist a new notification.

        Args:
            title: Notification title (required, max 100 chars)
            content: Notification body (required, max 500 chars)
            type: Notification type
            recipient: Recipient (user_id and username required)
            priority: Priority; urgent notifications are scheduled immediately
            scheduled_for: Earliest dispatch time (default now)
            expires_at: Hard cutoff (default scheduled_for + expiry_days)
            channels: Channel name to enabled flag; missing channels use defaults
            related_data: Weak references to task/meeting/document/calendar event
            source: Origin tag
            tags: Free-form tags
            user_agent: Creating client's user agent
            client_ip: Creating client's address

        Returns:
            The created notification

        Raises:
            NotificationValidationError: If any input is invalid
        """
        errors: list[str] = []
        now = self._now()

        title = str(title or "").strip()
        content = str(content or "").strip()
        if not title:
            errors.append("title is required")
        elif len(title) > MAX_TITLE_LENGTH:
            errors.append(f"title must be at most {MAX_TITLE_LENGTH} characters")
        if not content:
            errors.append("content is required")
        elif len(content) > MAX_CONTENT_LENGTH:
            errors.append(f"content must be at most {MAX_CONTENT_LENGTH} characters")

        notification_type = None
        if not type:
            errors.append("type is required")
        else:
            try:
                notification_type = NotificationType(type)
            except ValueError:
                errors.append(f"invalid type: {type}")

        try:
            notification_priority = NotificationPriority(priority or NotificationPriority.NORMAL)
        except ValueError:
            notification_priority = NotificationPriority.NORMAL
            errors.append(f"invalid priority: {priority}")

        resolved_recipient = _coerce_recipient(recipient, errors)
        scheduled = _coerce_datetime(scheduled_for, "scheduled_for", errors)
        expires = _coerce_datetime(expires_at, "expires_at", errors)

        requested_channels = channels or {}
        if not isinstance(requested_channels, dict):
            errors.append("channels must be an object")
            requested_channels = {}
        unknown = [name for name in requested_channels if name not in {c.value for c in Channel}]
        if unknown:
            errors.append(f"unknown channels: {', '.join(sorted(unknown))}")

        related = related_data or {}
        if not isinstance(related, dict):
            errors.append("related_data must be an object")
            related = {}
        unknown_refs = [key for key in related if key not in RELATED_FIELDS]
        if unknown_refs:
            errors.append(f"unknown related_data keys: {', '.join(sorted(unknown_refs))}")

        # Urgent notifications skip the initial delay
        if notification_priority == NotificationPriority.URGENT or scheduled is None:
            scheduled = now
        if expires is None:
            expires = scheduled + timedelta(days=self.config.notifications.expiry_days)
        elif expires <= scheduled:
            errors.append("expires_at must be after scheduled_for")

        if tags is not None and not isinstance(tags, list):
            errors.append("tags must be a list")

        if errors:
            raise NotificationValidationError(errors)

        enabled = self._resolve_channels(requested_channels, resolved_recipient)

        notification = Notification(
            title=title,
            content=content,
            type=notification_type,
            priority=notification_priority,
            priority_rank=PRIORITY_ORDER[notification_priority],
            status=initial_status(enabled),
            recipient_user_id=resolved_recipient.user_id,
            recipient_username=resolved_recipient.username,
            recipient_email=resolved_recipient.email,
            recipient_wechat_open_id=resolved_recipient.wechat_open_id,
            web_enabled=enabled[Channel.WEB],
            web_sent=False,
            web_read=False,
            wechat_enabled=enabled[Channel.WECHAT],
            wechat_sent=False,
            email_enabled=enabled[Channel.EMAIL],
            email_sent=False,
            scheduled_for=scheduled,
            expires_at=expires,
            retry_count=0,
            source=source or "system",
            user_agent=user_agent[:500] if user_agent else None,
            client_ip=client_ip,
        )
        for key, column in RELATED_FIELDS.items():
            if related.get(key) is not None:
                setattr(notification, column, str(related[key]))
        if tags:
            notification.set_tags_list(tags)

        self.store.create(notification)
        logger.info(
            f"Created notification {notification.id} ({notification_type.value}, "
            f"{notification_priority.value}) for user {resolved_recipient.user_id}"
        )
        return notification

    def _resolve_channels(
        self, requested: dict[str, bool], recipient: Recipient
    ) -> dict[Channel, bool]:
        """Merge requested channel flags with defaults and recipient reachability."""
        defaults = self.config.notifications
        enabled = {
            Channel.WEB: requested.get(Channel.WEB.value, defaults.default_web),
            Channel.WECHAT: requested.get(Channel.WECHAT.value, defaults.default_wechat),
            Channel.EMAIL: requested.get(Channel.EMAIL.value, defaults.default_email),
        }
        # Channels the recipient cannot be reached on are never attempted
        if enabled[Channel.WECHAT] and not recipient.wechat_open_id:
            logger.debug(f"Recipient {recipient.user_id} has no WeChat binding; disabling wechat channel")
            enabled[Channel.WECHAT] = False
        if enabled[Channel.EMAIL] and not recipient.email:
            logger.debug(f"Recipient {recipient.user_id} has no email address; disabling email channel")
            enabled[Channel.EMAIL] = False
        return {ch: bool(flag) for ch, flag in enabled.items()}

    def create_bulk(self, items: list[dict[str, Any]], *, source: str = "bulk") -> BulkCreateResult:
        """Create many notifications; each item succeeds or fails on its own."""
        result = BulkCreateResult()
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                result.results.append(BulkItemResult(index=index, success=False, errors=["item must be an object"]))
                continue

            kwargs = {name: item.get(name) for name in CREATE_FIELDS}
            kwargs["source"] = kwargs["source"] or source
            try:
                notification = self.create_notification(**kwargs)
            except NotificationValidationError as e:
                result.results.append(BulkItemResult(index=index, success=False, errors=e.errors))
            except StoreUnavailable as e:
                result.results.append(BulkItemResult(index=index, success=False, errors=[str(e)]))
            else:
                result.results.append(
                    BulkItemResult(index=index, success=True, notification_id=notification.id)
                )

        logger.info(
            f"Bulk create finished: {result.success_count} created, {result.failure_count} failed"
        )
        return result

    # --- Queries ---

    def get_notification(
        self, notification_id: int, user_id: str | None = None, refresh: bool = False
    ) -> Notification:
        """Get a notification, optionally restricted to its recipient.

        Pass ``refresh=True`` after another session (the dispatcher) changed it.

        Raises:
            NotificationNotFoundError: If missing or owned by someone else
        """
        if refresh:
            self.db.expire_all()
        notification = self.store.get(notification_id)
        if notification is None or (user_id is not None and notification.recipient_user_id != user_id):
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return notification

    def list_notifications(
        self,
        user_id: str,
        *,
        status: NotificationStatus | None = None,
        type: NotificationType | None = None,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Notification], int]:
        """Paginated list of a user's notifications, newest first."""
        offset = (max(page, 1) - 1) * limit
        return self.store.list_for_user(
            user_id, status=status, type=type, unread_only=unread_only, limit=limit, offset=offset
        )

    def unread_count(self, user_id: str) -> int:
        return self.store.count_unread(user_id)

    def get_statistics(self, user_id: str | None = None) -> dict[str, Any]:
        """Get notification statistics for a user, or globally when user_id is None."""
        return self.store.statistics(user_id, max_retries=self.policy.max_retries)

    # --- State changes ---

    def _apply(self, notification: Notification, mutation: dict[str, Any]) -> Notification:
        if mutation:
            self.store.update(notification.id, mutation)
            self.db.refresh(notification)
        return notification

    def mark_as_read(self, notification_id: int, user_id: str) -> Notification:
        """Mark a notification read on the web channel. Idempotent."""
        notification = self.get_notification(notification_id, user_id)
        mutation = mark_read(snapshot_of(notification), self._now())
        if mutation:
            logger.info(f"Notification {notification_id} marked as read")
        return self._apply(notification, mutation)

    def mark_multiple_as_read(self, user_id: str, notification_ids: list[int] | None = None) -> int:
        """Mark several notifications read; all unread ones when no IDs are given."""
        count = self.store.mark_many_read(user_id, notification_ids, self._now())
        logger.info(f"Marked {count} notifications as read for user {user_id}")
        return count

    def mark_delivered(self, notification_id: int) -> Notification:
        """Record transport confirmation (sent -> delivered)."""
        notification = self.get_notification(notification_id)
        return self._apply(notification, mark_delivered(snapshot_of(notification)))

    def mark_sent(self, notification_id: int, channel: Channel, message_id: str | None = None) -> Notification:
        """Record an externally confirmed send on one channel."""
        notification = self.get_notification(notification_id)
        mutation = mark_channel_sent(snapshot_of(notification), channel, message_id, self._now())
        return self._apply(notification, mutation)

    def mark_failed(
        self, notification_id: int, channel: Channel, reason: str, retryable: bool = True
    ) -> Notification:
        """Record an externally reported send failure on one channel."""
        notification = self.get_notification(notification_id)
        mutation = mark_channel_failed(
            snapshot_of(notification), channel, reason, retryable, self.policy, self._now()
        )
        return self._apply(notification, mutation)

    def delete_notification(self, notification_id: int, user_id: str) -> None:
        """Logically delete a user's notification.

        Raises:
            NotificationNotFoundError: If missing or owned by someone else
        """
        if not self.store.soft_delete(notification_id, user_id, self._now()):
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        logger.info(f"Notification {notification_id} deleted by user {user_id}")

    # --- Business event helpers ---

    def create_task_reminder(
        self,
        recipient: Recipient,
        task_id: str,
        task_title: str,
        due_date: datetime | None = None,
        reminder_type: str = "deadline",
        task_status: str | None = None,
    ) -> Notification:
        """Create a task deadline or status-change reminder."""
        if reminder_type == "deadline":
            due = due_date.strftime("%Y-%m-%d") if due_date else "soon"
            title = f"Task due soon: {task_title}"
            content = f'Your task "{task_title}" is due {due}. Please take care of it in time.'
            priority = NotificationPriority.HIGH
        else:
            title = f"Task updated: {task_title}"
            content = f'Your task "{task_title}" changed status to: {task_status or "updated"}'
            priority = NotificationPriority.NORMAL

        return self.create_notification(
            title=title[:MAX_TITLE_LENGTH],
            content=content[:MAX_CONTENT_LENGTH],
            type=NotificationType.TASK_REMINDER,
            recipient=recipient,
            priority=priority,
            related_data={"task_id": task_id},
        )

    def create_meeting_reminder(
        self,
        recipient: Recipient,
        meeting_id: str,
        meeting_title: str,
        starts_at: datetime,
        minutes_before: int = 15,
    ) -> Notification:
        """Create a reminder scheduled ``minutes_before`` the meeting starts."""
        starts_at = to_naive_utc(starts_at)
        return self.create_notification(
            title=f"Meeting reminder: {meeting_title}"[:MAX_TITLE_LENGTH],
            content=(
                f'Your meeting "{meeting_title}" starts in {minutes_before} minutes '
                f"({starts_at:%Y-%m-%d %H:%M} UTC)."
            )[:MAX_CONTENT_LENGTH],
            type=NotificationType.MEETING_REMINDER,
            recipient=recipient,
            priority=NotificationPriority.HIGH,
            scheduled_for=starts_at - timedelta(minutes=minutes_before),
            related_data={"meeting_id": meeting_id},
        )

    def create_document_analysis_notification(
        self,
        recipient: Recipient,
        document_id: str,
        document_name: str,
        key_points: list[str] | None = None,
    ) -> Notification:
        """Notify that a document finished analysis."""
        count = len(key_points or [])
        return self.create_notification(
            title=f"Document analysis complete: {document_name}"[:MAX_TITLE_LENGTH],
            content=f'Analysis of "{document_name}" finished with {count} key points.'[:MAX_CONTENT_LENGTH],
            type=NotificationType.DOCUMENT_ANALYSIS,
            recipient=recipient,
            priority=NotificationPriority.NORMAL,
            related_data={"document_id": document_id},
        )
