"""Email channel over SMTP."""

import asyncio
import logging
import smtplib
import time
from email.message import EmailMessage
from email.utils import make_msgid

from notifier.channels.base import ChannelSender, format_message
from notifier.delivery.state import NotificationSnapshot
from notifier.exceptions import ChannelSendFailed
from notifier.models.notification import Channel
from notifier.utils.config import EmailConfig

logger = logging.getLogger(__name__)


class EmailSender(ChannelSender):
    """Send notifications as plain-text email.

    smtplib is blocking, so each send runs in a worker thread whose session
    is bounded by the attempt timeout.
    """

    def __init__(self, config: EmailConfig):
        self.config = config

    @property
    def channel(self) -> Channel:
        return Channel.EMAIL

    def build_message(self, snapshot: NotificationSnapshot) -> EmailMessage:
        """Build the MIME message for a notification."""
        message = EmailMessage()
        message["Subject"] = snapshot.title
        message["From"] = self.config.from_address
        message["To"] = snapshot.recipient_email
        domain = self.config.from_address.rpartition("@")[2] or None
        message["Message-ID"] = make_msgid(domain=domain)
        message.set_content(f"Hi {snapshot.recipient_username},\n\n{format_message(snapshot)}\n")
        return message

    async def _deliver_within(self, snapshot: NotificationSnapshot, timeout: float | None) -> str | None:
        # A worker thread keeps running after a cancelled wait, so the SMTP
        # session is bounded instead and its result is always awaited.
        session_timeout = self.config.timeout_seconds
        if timeout is not None:
            session_timeout = min(session_timeout, timeout)
        return await self._deliver(snapshot, session_timeout)

    async def _deliver(self, snapshot: NotificationSnapshot, session_timeout: float | None = None) -> str | None:
        if not snapshot.recipient_email:
            raise ChannelSendFailed(self.channel.value, "recipient has no email address", retryable=False)

        message = self.build_message(snapshot)
        await asyncio.to_thread(self._send_sync, message, session_timeout or self.config.timeout_seconds)
        return message["Message-ID"]

    def _open_connection(self, timeout: float) -> smtplib.SMTP:
        if self.config.use_ssl:
            return smtplib.SMTP_SSL(self.config.smtp_host, self.config.smtp_port, timeout=timeout)
        server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=timeout)
        if self.config.use_tls:
            server.starttls()
        return server

    @staticmethod
    def _bound_socket(server: smtplib.SMTP, deadline: float) -> None:
        """Shrink the socket timeout to what is left of the session."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("smtp session deadline exceeded")
        if server.sock is not None:
            server.sock.settimeout(remaining)

    def _send_sync(self, message: EmailMessage, session_timeout: float) -> None:
        """Send a message within ``session_timeout`` seconds, classifying SMTP failures.

        Raises:
            ChannelSendFailed: Bounces and 5xx replies are permanent; connection
                problems, timeouts, auth failures and 4xx replies are retryable.
        """
        channel = self.channel.value
        deadline = time.monotonic() + session_timeout
        try:
            with self._open_connection(session_timeout) as server:
                if self.config.username:
                    self._bound_socket(server, deadline)
                    server.login(self.config.username, self.config.password)
                self._bound_socket(server, deadline)
                server.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            raise ChannelSendFailed(channel, f"recipient refused: {e.recipients}", retryable=False) from e
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPConnectError) as e:
            raise ChannelSendFailed(channel, f"smtp error {e.smtp_code}: {e.smtp_error!r}", retryable=True) from e
        except smtplib.SMTPResponseException as e:
            raise ChannelSendFailed(
                channel, f"smtp error {e.smtp_code}: {e.smtp_error!r}", retryable=e.smtp_code < 500
            ) from e
        except smtplib.SMTPServerDisconnected as e:
            raise ChannelSendFailed(channel, f"server disconnected: {e}", retryable=True) from e
        except OSError as e:
            # Covers timeouts, refused connections and other smtplib errors
            raise ChannelSendFailed(channel, f"transport error: {e}", retryable=True) from e
