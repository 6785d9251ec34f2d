"""Delivery channel transports."""

from notifier.channels.base import ChannelSender, format_message
from notifier.channels.email import EmailSender
from notifier.channels.registry import ChannelRegistry
from notifier.channels.web import WebFeedSender
from notifier.channels.wechat import WeChatPushSender

__all__ = [
    "ChannelRegistry",
    "ChannelSender",
    "EmailSender",
    "WeChatPushSender",
    "WebFeedSender",
    "format_message",
]
