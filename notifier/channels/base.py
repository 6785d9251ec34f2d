"""Base channel sender interface."""

import asyncio
import logging
from abc import ABC, abstractmethod

from notifier.delivery.state import NotificationSnapshot, SendOutcome
from notifier.exceptions import ChannelSendFailed
from notifier.models.notification import Channel, NotificationPriority, NotificationType

logger = logging.getLogger(__name__)

TYPE_MARKERS = {
    NotificationType.TASK_REMINDER: "⏰",
    NotificationType.MEETING_REMINDER: "📅",
    NotificationType.DOCUMENT_ANALYSIS: "📄",
    NotificationType.SYSTEM_UPDATE: "🔔",
    NotificationType.TASK_UPDATE: "📋",
    NotificationType.CALENDAR_SYNC: "🔄",
    NotificationType.GENERAL: "💬",
}

PRIORITY_MARKERS = {
    NotificationPriority.URGENT: "🚨",
    NotificationPriority.HIGH: "🔴",
    NotificationPriority.NORMAL: "",
    NotificationPriority.LOW: "",
}

RELATED_HINTS = {
    "task_id": "View task details",
    "meeting_id": "View meeting details",
    "document_id": "View document",
    "calendar_event_id": "View calendar event",
}


def format_message(snapshot: NotificationSnapshot) -> str:
    """Render a plain-text message body for push and email transports."""
    markers = " ".join(
        m for m in (TYPE_MARKERS.get(snapshot.type, "📢"), PRIORITY_MARKERS.get(snapshot.priority, "")) if m
    )
    lines = [f"{markers} {snapshot.title}", "", snapshot.content]
    for key, hint in RELATED_HINTS.items():
        if key in snapshot.related:
            lines.extend(["", f"🔗 {hint}"])
            break
    return "\n".join(lines)


class ChannelSender(ABC):
    """Base class for all channel transports.

    Subclasses implement ``_deliver`` and raise ``ChannelSendFailed`` to
    report a classified failure. ``send`` never raises: every failure is
    turned into a ``SendOutcome``.
    """

    @property
    @abstractmethod
    def channel(self) -> Channel:
        """Return the channel this sender delivers to."""
        pass

    @abstractmethod
    async def _deliver(self, snapshot: NotificationSnapshot) -> str | None:
        """Deliver the notification over the transport.

        Returns:
            External message ID, if the transport provides one.

        Raises:
            ChannelSendFailed: On a classified transport failure.
        """
        pass

    async def send(self, snapshot: NotificationSnapshot, timeout: float | None = None) -> SendOutcome:
        """Attempt one delivery, bounded by ``timeout`` seconds.

        Args:
            snapshot: The notification to deliver
            timeout: Per-attempt timeout; a timeout is a retryable failure

        Returns:
            SendOutcome describing success or a classified failure
        """
        try:
            message_id = await self._deliver_within(snapshot, timeout)
        except ChannelSendFailed as e:
            logger.warning(
                f"{self.channel.value} send failed for notification {snapshot.id}: "
                f"{e.reason} (retryable={e.retryable})"
            )
            return SendOutcome.failed(self.channel, e.reason, retryable=e.retryable)
        except asyncio.TimeoutError:
            logger.warning(f"{self.channel.value} send timed out for notification {snapshot.id} after {timeout}s")
            return SendOutcome.failed(self.channel, f"timed out after {timeout}s", retryable=True)
        except Exception as e:
            logger.exception(f"Unexpected {self.channel.value} error for notification {snapshot.id}")
            return SendOutcome.failed(self.channel, f"unexpected error: {e}", retryable=True)

        logger.debug(f"{self.channel.value} delivered notification {snapshot.id} ({message_id})")
        return SendOutcome.ok(self.channel, message_id)

    async def _deliver_within(self, snapshot: NotificationSnapshot, timeout: float | None) -> str | None:
        """Run ``_deliver`` under the attempt timeout."""
        if timeout is None:
            return await self._deliver(snapshot)
        return await asyncio.wait_for(self._deliver(snapshot), timeout=timeout)

    async def close(self) -> None:
        """Release transport resources."""
        return None
