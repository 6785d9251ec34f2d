"""WeChat official account push channel.

Sends customer-service text messages through the WeChat HTTP API and
classifies API error codes into retryable and permanent failures.
"""

import asyncio
import logging
import time

import httpx

from notifier.channels.base import ChannelSender, format_message
from notifier.delivery.state import NotificationSnapshot
from notifier.exceptions import ChannelSendFailed
from notifier.models.notification import Channel
from notifier.utils.config import WeChatConfig

logger = logging.getLogger(__name__)

# Recipient-side problems: retrying cannot help
PERMANENT_ERRORS = {
    40003: "invalid openid",
    43004: "recipient has not followed the account",
    45015: "recipient interaction window has expired",
    40013: "invalid appid",
}

# Access token rejected; refresh and retry later
TOKEN_ERRORS = {
    40001: "access token invalid",
    40014: "access token malformed",
    42001: "access token expired",
}

RATE_LIMIT_ERRORS = {
    45009: "api daily quota reached",
    45047: "customer-service message limit reached",
}

# Refresh the token a little before WeChat expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 300


class WeChatPushSender(ChannelSender):
    """Deliver notifications to a WeChat user via the official account API."""

    def __init__(self, config: WeChatConfig, client: httpx.AsyncClient | None = None):
        """Initialize the WeChat sender.

        Args:
            config: WeChat configuration (app id, secret, API base URL)
            client: Optional pre-built HTTP client (used for testing)
        """
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def channel(self) -> Channel:
        return Channel.WECHAT

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        await self.client.aclose()

    def invalidate_token(self) -> None:
        """Forget the cached access token."""
        self._access_token = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """Return a cached access token, fetching a new one when needed.

        Raises:
            ChannelSendFailed: If the token endpoint rejects the credentials
        """
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = await self.client.get(
                    f"{self.base_url}/cgi-bin/token",
                    params={
                        "grant_type": "client_credential",
                        "appid": self.config.app_id,
                        "secret": self.config.app_secret,
                    },
                )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as e:
                raise ChannelSendFailed(self.channel.value, f"token request failed: {e}", retryable=True) from e

            token = data.get("access_token")
            if not token:
                errcode = int(data.get("errcode") or -1)
                logger.warning(f"WeChat token request rejected with errcode {errcode}")
                self._raise_for_errcode(errcode, data.get("errmsg", "token request rejected"))

            expires_in = int(data.get("expires_in", 7200))
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 60)
            logger.debug("Fetched new WeChat access token")
            return token

    async def _deliver(self, snapshot: NotificationSnapshot) -> str | None:
        open_id = snapshot.recipient_wechat_open_id
        if not open_id:
            raise ChannelSendFailed(self.channel.value, "recipient has no WeChat binding", retryable=False)

        token = await self.get_access_token()
        payload = {
            "touser": open_id,
            "msgtype": "text",
            "text": {"content": format_message(snapshot)},
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/cgi-bin/message/custom/send",
                params={"access_token": token},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise ChannelSendFailed(self.channel.value, f"transport error: {e}", retryable=True) from e

        if response.status_code >= 500:
            raise ChannelSendFailed(
                self.channel.value, f"server error {response.status_code}", retryable=True
            )
        if response.status_code >= 400:
            raise ChannelSendFailed(
                self.channel.value, f"request rejected with status {response.status_code}", retryable=False
            )

        data = response.json()
        errcode = int(data.get("errcode", 0))
        if errcode == 0:
            return str(data.get("msgid") or f"wechat-{snapshot.id}")

        self._raise_for_errcode(errcode, data.get("errmsg", ""))
        return None

    def _raise_for_errcode(self, errcode: int, errmsg: str) -> None:
        """Translate a WeChat error code into a classified failure."""
        if errcode in PERMANENT_ERRORS:
            raise ChannelSendFailed(
                self.channel.value, f"{PERMANENT_ERRORS[errcode]} ({errcode})", retryable=False
            )
        if errcode in TOKEN_ERRORS:
            self.invalidate_token()
            raise ChannelSendFailed(self.channel.value, f"{TOKEN_ERRORS[errcode]} ({errcode})", retryable=True)
        if errcode in RATE_LIMIT_ERRORS:
            raise ChannelSendFailed(
                self.channel.value, f"rate limited: {RATE_LIMIT_ERRORS[errcode]} ({errcode})", retryable=True
            )
        raise ChannelSendFailed(self.channel.value, f"api error {errcode}: {errmsg}", retryable=True)
