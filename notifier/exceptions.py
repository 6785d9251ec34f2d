"""Custom exceptions for the notification engine."""


class NotifierError(Exception):
    """Base exception for notification engine errors."""

    pass


class NotificationValidationError(NotifierError, ValueError):
    """Raised when notification input is rejected before persistence."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        super().__init__("; ".join(errors))


class NotificationNotFoundError(NotifierError, LookupError):
    """Raised when a notification does not exist or is not visible to the caller."""

    pass


class StoreUnavailable(NotifierError):
    """Raised when the persistence layer cannot be reached."""

    pass


class InvalidTransitionError(NotifierError):
    """Raised when an explicit status change is not allowed from the current status."""

    pass


class ChannelSendFailed(NotifierError):
    """Raised by a channel transport when a send attempt fails.

    Attributes:
        channel: Channel name (web, wechat, email)
        reason: Human-readable failure reason
        retryable: Whether the attempt may be repeated later
    """

    def __init__(self, channel: str, reason: str, retryable: bool = True):
        self.channel = channel
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"{channel}: {reason}")


class RetryBudgetExhausted(NotifierError):
    """Raised when a notification has used all of its retry attempts."""

    def __init__(self, notification_id: int, retry_count: int):
        self.notification_id = notification_id
        self.retry_count = retry_count
        super().__init__(
            f"Notification {notification_id} exhausted its retry budget ({retry_count} attempts)"
        )
