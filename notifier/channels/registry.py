"""Channel registry that builds senders from configuration."""

import logging

from notifier.channels.base import ChannelSender
from notifier.channels.email import EmailSender
from notifier.channels.web import WebFeedSender
from notifier.channels.wechat import WeChatPushSender
from notifier.models.notification import Channel
from notifier.utils.config import Config

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Holds one sender per configured channel."""

    def __init__(self, senders: dict[Channel, ChannelSender] | None = None):
        self.senders: dict[Channel, ChannelSender] = dict(senders or {})

    @classmethod
    def from_config(cls, config: Config) -> "ChannelRegistry":
        """Build senders for every channel enabled in configuration.

        The web feed needs no transport and is always available.
        """
        registry = cls({Channel.WEB: WebFeedSender()})

        if config.wechat.enabled:
            registry.register(WeChatPushSender(config.wechat))
            logger.info("WeChat push channel initialized")
        else:
            logger.info("WeChat push channel disabled in configuration")

        if config.email.enabled:
            registry.register(EmailSender(config.email))
            logger.info(f"Email channel initialized ({config.email.smtp_host}:{config.email.smtp_port})")
        else:
            logger.info("Email channel disabled in configuration")

        return registry

    def register(self, sender: ChannelSender) -> None:
        """Add or replace the sender for its channel."""
        self.senders[sender.channel] = sender

    def get(self, channel: Channel) -> ChannelSender | None:
        """Return the sender for a channel, if configured."""
        return self.senders.get(channel)

    def configured_channels(self) -> list[Channel]:
        return [ch for ch in Channel if ch in self.senders]

    async def close(self) -> None:
        """Close every sender's transport."""
        for sender in self.senders.values():
            await sender.close()
