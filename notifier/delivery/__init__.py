"""Delivery state machine and retry policy."""

from notifier.delivery.policy import RetryDecision, RetryPolicy
from notifier.delivery.state import (
    ChannelState,
    Mutation,
    NotificationSnapshot,
    SendOutcome,
    apply_send_outcomes,
    initial_status,
    mark_channel_failed,
    mark_channel_sent,
    mark_delivered,
    mark_read,
    snapshot_of,
)

__all__ = [
    "ChannelState",
    "Mutation",
    "NotificationSnapshot",
    "RetryDecision",
    "RetryPolicy",
    "SendOutcome",
    "apply_send_outcomes",
    "initial_status",
    "mark_channel_failed",
    "mark_channel_sent",
    "mark_delivered",
    "mark_read",
    "snapshot_of",
]
