"""In-app web feed channel."""

from notifier.channels.base import ChannelSender
from notifier.delivery.state import NotificationSnapshot
from notifier.models.notification import Channel


class WebFeedSender(ChannelSender):
    """The stored record is the delivery; the UI reads it from the feed."""

    @property
    def channel(self) -> Channel:
        return Channel.WEB

    async def _deliver(self, snapshot: NotificationSnapshot) -> str | None:
        return f"web-{snapshot.id}"
