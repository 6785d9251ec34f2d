"""Background dispatcher for due and retryable notifications."""

from notifier.dispatcher.core import Dispatcher, DispatcherState, SweepResult, get_dispatcher, reset_dispatcher

__all__ = ["Dispatcher", "DispatcherState", "SweepResult", "get_dispatcher", "reset_dispatcher"]
