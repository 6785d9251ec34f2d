"""Notification status state machine.

Transitions are pure functions over an immutable snapshot. Each returns a
``Mutation`` (column name to new value) that the store applies as a targeted
update, so nothing here needs a live database.

Status edges:
    pending -> sent | failed
    failed  -> sent | failed        (retry attempts, channel by channel)
    sent    -> delivered
    pending | sent | delivered | failed -> read   (user action on the web feed)
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from notifier.delivery.policy import RetryPolicy
from notifier.exceptions import InvalidTransitionError
from notifier.models.notification import (
    Channel,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    channel_column,
)

Mutation = dict[str, Any]

# Statuses a send outcome may still move; later ones only record channel fields
SENDABLE_STATUSES = frozenset({NotificationStatus.PENDING, NotificationStatus.FAILED})


@dataclass(frozen=True)
class ChannelState:
    """Delivery state of one channel."""

    enabled: bool
    sent: bool = False
    sent_at: datetime | None = None
    message_id: str | None = None
    error: str | None = None
    read: bool = False
    read_at: datetime | None = None

    @property
    def pending(self) -> bool:
        """Enabled and not yet delivered."""
        return self.enabled and not self.sent


@dataclass(frozen=True)
class NotificationSnapshot:
    """Read-only copy of a notification, safe to use outside a DB session."""

    id: int
    title: str
    content: str
    type: NotificationType
    priority: NotificationPriority
    status: NotificationStatus
    recipient_user_id: str
    recipient_username: str
    recipient_email: str | None
    recipient_wechat_open_id: str | None
    channels: Mapping[Channel, ChannelState]
    scheduled_for: datetime
    expires_at: datetime
    retry_count: int = 0
    next_retry_at: datetime | None = None
    related: Mapping[str, str] = field(default_factory=dict)

    def pending_channels(self) -> list[Channel]:
        """Channels that still need a send attempt."""
        return [ch for ch, state in self.channels.items() if state.pending]


@dataclass(frozen=True)
class SendOutcome:
    """Result of one channel send attempt."""

    channel: Channel
    success: bool
    message_id: str | None = None
    error: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, channel: Channel, message_id: str | None = None) -> "SendOutcome":
        return cls(channel=channel, success=True, message_id=message_id)

    @classmethod
    def failed(cls, channel: Channel, error: str, retryable: bool = True) -> "SendOutcome":
        return cls(channel=channel, success=False, error=error, retryable=retryable)


def snapshot_of(notification: Notification) -> NotificationSnapshot:
    """Copy an ORM notification into an immutable snapshot."""
    channels = {}
    for ch in Channel:
        channels[ch] = ChannelState(
            enabled=notification.channel_value(ch, "enabled"),
            sent=notification.channel_value(ch, "sent"),
            sent_at=notification.channel_value(ch, "sent_at"),
            message_id=notification.channel_value(ch, "message_id"),
            error=notification.channel_value(ch, "error"),
            read=notification.web_read if ch == Channel.WEB else False,
            read_at=notification.web_read_at if ch == Channel.WEB else None,
        )
    return NotificationSnapshot(
        id=notification.id,
        title=notification.title,
        content=notification.content,
        type=notification.type,
        priority=notification.priority,
        status=notification.status,
        recipient_user_id=notification.recipient_user_id,
        recipient_username=notification.recipient_username,
        recipient_email=notification.recipient_email,
        recipient_wechat_open_id=notification.recipient_wechat_open_id,
        channels=channels,
        scheduled_for=notification.scheduled_for,
        expires_at=notification.expires_at,
        retry_count=notification.retry_count,
        next_retry_at=notification.next_retry_at,
        related=notification.related_data(),
    )


def initial_status(enabled: Mapping[Channel, bool]) -> NotificationStatus:
    """Status for a new notification.

    With no enabled channel there is nothing to deliver, so the
    notification is born ``sent``.
    """
    if any(enabled.values()):
        return NotificationStatus.PENDING
    return NotificationStatus.SENT


def apply_send_outcomes(
    snapshot: NotificationSnapshot,
    outcomes: Iterable[SendOutcome],
    policy: RetryPolicy,
    now: datetime,
) -> Mutation:
    """Fold the outcomes of one dispatch attempt into a mutation.

    A retryable failure on any channel consumes one unit of retry budget for
    the whole attempt. A non-retryable failure disables the channel without
    consuming budget. Channels already sent or disabled are never modified.

    Once a notification has left the sendable statuses (sent, delivered,
    read) outcomes only fill in channel fields; status and retry bookkeeping
    never move backwards.
    """
    mutation: Mutation = {}
    channels = dict(snapshot.channels)
    retryable_failure = False
    disabled_any = False

    for outcome in outcomes:
        ch = outcome.channel
        current = channels[ch]
        if current.sent or not current.enabled:
            continue

        if outcome.success:
            channels[ch] = replace(current, sent=True, sent_at=now, message_id=outcome.message_id, error=None)
            mutation[channel_column(ch, "sent")] = True
            mutation[channel_column(ch, "sent_at")] = now
            mutation[channel_column(ch, "message_id")] = outcome.message_id
            mutation[channel_column(ch, "error")] = None
        elif outcome.retryable:
            channels[ch] = replace(current, error=outcome.error)
            mutation[channel_column(ch, "error")] = outcome.error
            retryable_failure = True
        else:
            channels[ch] = replace(current, enabled=False, error=outcome.error)
            mutation[channel_column(ch, "enabled")] = False
            mutation[channel_column(ch, "error")] = outcome.error
            disabled_any = True

    if snapshot.status not in SENDABLE_STATUSES:
        return mutation

    enabled = [state for state in channels.values() if state.enabled]

    if all(state.sent for state in enabled):
        if enabled or not disabled_any:
            mutation["status"] = NotificationStatus.SENT
            mutation["next_retry_at"] = None
        else:
            # Every channel was rejected permanently; nothing left to retry
            mutation["status"] = NotificationStatus.FAILED
            mutation["next_retry_at"] = None
    elif retryable_failure:
        decision = policy.evaluate(snapshot.retry_count, now)
        mutation["status"] = NotificationStatus.FAILED
        mutation["last_retry_at"] = now
        if decision.can_retry:
            mutation["retry_count"] = snapshot.retry_count + 1
            mutation["next_retry_at"] = decision.next_retry_at
        else:
            mutation["next_retry_at"] = None

    return mutation


def _require_enabled(snapshot: NotificationSnapshot, channel: Channel) -> None:
    if not snapshot.channels[channel].enabled:
        raise InvalidTransitionError(
            f"Channel '{channel.value}' is disabled for notification {snapshot.id}"
        )


def mark_channel_sent(
    snapshot: NotificationSnapshot,
    channel: Channel,
    message_id: str | None,
    now: datetime,
) -> Mutation:
    """Record a successful send on a single channel."""
    _require_enabled(snapshot, channel)
    return apply_send_outcomes(snapshot, [SendOutcome.ok(channel, message_id)], RetryPolicy(), now)


def mark_channel_failed(
    snapshot: NotificationSnapshot,
    channel: Channel,
    reason: str,
    retryable: bool,
    policy: RetryPolicy,
    now: datetime,
) -> Mutation:
    """Record a failed send on a single channel."""
    _require_enabled(snapshot, channel)
    return apply_send_outcomes(
        snapshot, [SendOutcome.failed(channel, reason, retryable=retryable)], policy, now
    )


def mark_read(snapshot: NotificationSnapshot, now: datetime) -> Mutation:
    """Mark the web channel read. Reading implies the feed entry was received."""
    web = snapshot.channels[Channel.WEB]
    if web.read:
        return {}

    mutation: Mutation = {
        "status": NotificationStatus.READ,
        "web_read": True,
        "web_read_at": now,
        "next_retry_at": None,
    }
    if not web.sent:
        mutation["web_sent"] = True
        mutation["web_sent_at"] = now
    return mutation


def mark_delivered(snapshot: NotificationSnapshot) -> Mutation:
    """Record transport confirmation for a sent notification."""
    if snapshot.status == NotificationStatus.DELIVERED:
        return {}
    if snapshot.status != NotificationStatus.SENT:
        raise InvalidTransitionError(
            f"Cannot mark notification {snapshot.id} delivered from status '{snapshot.status.value}'"
        )
    return {"status": NotificationStatus.DELIVERED}
