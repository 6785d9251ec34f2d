"""Dispatcher that sweeps the notification store and delivers due notifications.

Two interval jobs drive delivery: a pending sweep for notifications whose
scheduled time has come, and a retry sweep for failed notifications whose
backoff has elapsed. A third job reaps expired notifications. The store is
re-queried on every tick, so the dispatcher holds no authoritative state and
can be restarted or run as several instances (claims are leased).
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from notifier.channels.registry import ChannelRegistry
from notifier.delivery.policy import RetryPolicy
from notifier.delivery.state import (
    NotificationSnapshot,
    SendOutcome,
    apply_send_outcomes,
    snapshot_of,
)
from notifier.exceptions import NotificationNotFoundError, RetryBudgetExhausted, StoreUnavailable
from notifier.models.database import get_db_session
from notifier.models.notification import Channel, NotificationStatus
from notifier.services.notification_store import NotificationStore
from notifier.utils.config import Config
from notifier.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
RETRY = "retry"
MANUAL = "manual"

SWEEP_STATUSES = {
    PENDING: [NotificationStatus.PENDING],
    RETRY: [NotificationStatus.FAILED],
    MANUAL: [NotificationStatus.PENDING, NotificationStatus.FAILED],
}


@dataclass
class DispatcherState:
    """Current state of the dispatcher."""

    is_running: bool = False
    started_at: datetime | None = None
    last_pending_sweep: datetime | None = None
    last_retry_sweep: datetime | None = None
    last_reap: datetime | None = None
    notifications_sent_session: int = 0
    notifications_failed_session: int = 0
    channels_disabled_session: int = 0
    retries_exhausted_session: int = 0
    reaped_session: int = 0
    store_errors_session: int = 0
    errors_session: int = 0


@dataclass
class SweepResult:
    """Result of one sweep."""

    kind: str
    selected: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    disabled_channels: int = 0
    exhausted: int = 0
    skipped: int = 0
    duration: float = 0.0
    notification_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "selected": self.selected,
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "disabled_channels": self.disabled_channels,
            "exhausted": self.exhausted,
            "skipped": self.skipped,
            "duration": round(self.duration, 3),
        }


class Dispatcher:
    """Schedules sweeps and delivers notifications over their enabled channels."""

    def __init__(
        self,
        config: Config,
        session_factory: Callable[[], Session] | None = None,
        registry: ChannelRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the dispatcher.

        Args:
            config: Application configuration
            session_factory: Optional factory for database sessions
            registry: Channel senders; built from configuration when omitted
            clock: Returns the current naive UTC time (injectable for tests)
        """
        self.config = config
        self.dispatcher_config = config.dispatcher
        self._session_factory = session_factory
        self.registry = registry or ChannelRegistry.from_config(config)
        self.policy = RetryPolicy.from_config(config.retry)
        self._clock = clock or utcnow

        self.state = DispatcherState()
        self._scheduler: AsyncIOScheduler | None = None
        self._semaphore = asyncio.Semaphore(self.dispatcher_config.max_workers)

    @property
    def owner(self) -> str:
        return self.dispatcher_config.instance_id

    def _now(self) -> datetime:
        return self._clock()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the scheduled sweeps."""
        if self.state.is_running:
            logger.warning("Dispatcher is already running")
            return

        logger.info("Starting dispatcher...")
        self.state = DispatcherState(is_running=True, started_at=self._now())

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_pending_sweep,
            trigger=IntervalTrigger(seconds=self.dispatcher_config.pending_interval_seconds),
            id="pending_sweep",
            name="Deliver due pending notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._scheduled_retry_sweep,
            trigger=IntervalTrigger(seconds=self.dispatcher_config.retry_interval_seconds),
            id="retry_sweep",
            name="Retry failed notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._scheduled_reap,
            trigger=IntervalTrigger(minutes=self.dispatcher_config.reap_interval_minutes),
            id="reap_expired",
            name="Delete expired notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

        logger.info(
            f"Dispatcher {self.owner} started. Pending sweep every "
            f"{self.dispatcher_config.pending_interval_seconds}s, retry sweep every "
            f"{self.dispatcher_config.retry_interval_seconds}s, channels: "
            f"{', '.join(ch.value for ch in self.registry.configured_channels())}"
        )

    async def stop(self) -> None:
        """Stop the scheduled sweeps. In-flight sends finish on their own timeout."""
        if not self.state.is_running:
            logger.warning("Dispatcher is not running")
            return

        logger.info("Stopping dispatcher...")
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self.state.is_running = False
        logger.info(
            f"Dispatcher stopped (sent={self.state.notifications_sent_session}, "
            f"failed={self.state.notifications_failed_session}, errors={self.state.errors_session})"
        )

    async def close(self) -> None:
        """Stop if running and release channel transports."""
        if self.state.is_running:
            await self.stop()
        await self.registry.close()

    # --- Scheduled job wrappers ---

    async def _scheduled_pending_sweep(self) -> None:
        try:
            await self.run_pending_sweep()
        except StoreUnavailable as e:
            self.state.store_errors_session += 1
            logger.error(f"Pending sweep aborted, will retry next tick: {e}")
        except Exception as e:
            self.state.errors_session += 1
            logger.exception(f"Pending sweep failed: {e}")

    async def _scheduled_retry_sweep(self) -> None:
        try:
            await self.run_retry_sweep()
        except StoreUnavailable as e:
            self.state.store_errors_session += 1
            logger.error(f"Retry sweep aborted, will retry next tick: {e}")
        except Exception as e:
            self.state.errors_session += 1
            logger.exception(f"Retry sweep failed: {e}")

    async def _scheduled_reap(self) -> None:
        try:
            self.reap_expired()
        except StoreUnavailable as e:
            self.state.store_errors_session += 1
            logger.error(f"Expiry reap aborted, will retry next tick: {e}")
        except Exception as e:
            self.state.errors_session += 1
            logger.exception(f"Expiry reap failed: {e}")

    # --- Sweeps ---

    async def run_pending_sweep(self) -> SweepResult:
        """Deliver every pending notification that is due, urgent first.

        Raises:
            StoreUnavailable: If the store cannot be reached; the sweep is abandoned
        """
        now = self._now()
        with get_db_session(self._session_factory) as db:
            candidates = NotificationStore(db).list_pending_due(now, limit=self.dispatcher_config.batch_size)
            ids = [n.id for n in candidates]

        result = await self._sweep(PENDING, ids)
        self.state.last_pending_sweep = now
        return result

    async def run_retry_sweep(self) -> SweepResult:
        """Re-attempt failed notifications whose backoff has elapsed.

        Raises:
            StoreUnavailable: If the store cannot be reached; the sweep is abandoned
        """
        now = self._now()
        with get_db_session(self._session_factory) as db:
            candidates = NotificationStore(db).list_retryable_due(
                now, self.policy.max_retries, limit=self.dispatcher_config.batch_size
            )
            ids = [n.id for n in candidates]

        result = await self._sweep(RETRY, ids)
        self.state.last_retry_sweep = now
        return result

    async def _sweep(self, kind: str, notification_ids: list[int]) -> SweepResult:
        start_time = time.time()
        result = SweepResult(kind=kind, selected=len(notification_ids))
        if not notification_ids:
            logger.debug(f"{kind.capitalize()} sweep found nothing to do")
            return result

        logger.info(f"{kind.capitalize()} sweep selected {len(notification_ids)} notifications")
        outcomes = await asyncio.gather(
            *(self._process(notification_id, kind, result) for notification_id in notification_ids),
            return_exceptions=True,
        )

        store_error: StoreUnavailable | None = None
        for notification_id, outcome in zip(notification_ids, outcomes):
            if isinstance(outcome, StoreUnavailable):
                store_error = store_error or outcome
            elif isinstance(outcome, Exception):
                self.state.errors_session += 1
                logger.error(f"Failed to process notification {notification_id}: {outcome}")

        result.duration = time.time() - start_time
        if store_error is not None:
            raise store_error

        logger.info(
            f"{kind.capitalize()} sweep done in {result.duration:.2f}s: claimed={result.claimed} "
            f"sent={result.sent} failed={result.failed} disabled={result.disabled_channels} "
            f"exhausted={result.exhausted} skipped={result.skipped}"
        )
        return result

    async def _process(self, notification_id: int, kind: str, result: SweepResult) -> None:
        """Claim, send and record one notification."""
        now = self._now()
        with get_db_session(self._session_factory) as db:
            store = NotificationStore(db)
            claimed = store.claim(
                notification_id,
                self.owner,
                now,
                self.dispatcher_config.lease_seconds,
                SWEEP_STATUSES[kind],
            )
            notification = store.get(notification_id) if claimed else None
            snapshot = snapshot_of(notification) if notification is not None else None

        if snapshot is None:
            # Taken by another instance or changed since selection
            result.skipped += 1
            return

        result.claimed += 1
        applied = False
        try:
            channels = snapshot.pending_channels()
            if snapshot.expires_at <= now or not channels:
                result.skipped += 1
                return

            outcomes = await asyncio.gather(*(self._send_channel(snapshot, ch) for ch in channels))
            mutation = apply_send_outcomes(snapshot, outcomes, self.policy, self._now())

            with get_db_session(self._session_factory) as db:
                NotificationStore(db).update(notification_id, mutation, release_lease=True)
            applied = True

            self._record(snapshot, outcomes, mutation, result)
        finally:
            if not applied:
                with get_db_session(self._session_factory) as db:
                    NotificationStore(db).release(notification_id, self.owner)

    async def _send_channel(self, snapshot: NotificationSnapshot, channel: Channel) -> SendOutcome:
        sender = self.registry.get(channel)
        if sender is None:
            logger.warning(f"No sender configured for {channel.value}; disabling it on notification {snapshot.id}")
            return SendOutcome.failed(channel, f"{channel.value} channel is not configured", retryable=False)

        async with self._semaphore:
            return await sender.send(snapshot, timeout=self.dispatcher_config.send_timeout_seconds)

    def _record(
        self,
        snapshot: NotificationSnapshot,
        outcomes: list[SendOutcome],
        mutation: dict[str, Any],
        result: SweepResult,
    ) -> None:
        """Update sweep and session counters for one processed notification."""
        result.notification_ids.append(snapshot.id)
        disabled = sum(1 for o in outcomes if not o.success and not o.retryable)
        result.disabled_channels += disabled
        self.state.channels_disabled_session += disabled

        status = mutation.get("status")
        if status == NotificationStatus.SENT:
            result.sent += 1
            self.state.notifications_sent_session += 1
        elif status == NotificationStatus.FAILED:
            result.failed += 1
            self.state.notifications_failed_session += 1
            retryable_failure = any(not o.success and o.retryable for o in outcomes)
            retry_count = mutation.get("retry_count", snapshot.retry_count)
            spent = mutation.get("next_retry_at") is None or retry_count >= self.policy.max_retries
            if retryable_failure and spent:
                result.exhausted += 1
                self.state.retries_exhausted_session += 1
                # Terminal: recorded, not raised
                logger.warning(str(RetryBudgetExhausted(snapshot.id, retry_count)))

    # --- Operator actions ---

    async def dispatch_notification(self, notification_id: int, force: bool = False) -> bool:
        """Attempt delivery of a single notification now.

        Args:
            notification_id: Notification to deliver
            force: Ignore ``scheduled_for`` and any retry backoff (never expiry)

        Returns:
            True if a send was attempted

        Raises:
            NotificationNotFoundError: If the notification does not exist
            RetryBudgetExhausted: If the notification has no retries left
        """
        now = self._now()
        with get_db_session(self._session_factory) as db:
            notification = NotificationStore(db).get(notification_id)
            if notification is None:
                raise NotificationNotFoundError(f"Notification {notification_id} not found")
            snapshot = snapshot_of(notification)

        if snapshot.status not in SWEEP_STATUSES[MANUAL] or not snapshot.pending_channels():
            logger.info(f"Notification {notification_id} has nothing left to deliver ({snapshot.status.value})")
            return False
        if snapshot.expires_at <= now:
            logger.info(f"Notification {notification_id} has expired; not dispatching")
            return False
        if snapshot.status == NotificationStatus.FAILED:
            if snapshot.retry_count >= self.policy.max_retries or snapshot.next_retry_at is None:
                raise RetryBudgetExhausted(notification_id, snapshot.retry_count)
            if not force and snapshot.next_retry_at > now:
                return False
        elif not force and snapshot.scheduled_for > now:
            return False

        result = SweepResult(kind=MANUAL, selected=1)
        await self._process(notification_id, MANUAL, result)
        attempted = bool(result.notification_ids)
        logger.info(f"Manual dispatch of notification {notification_id}: attempted={attempted}")
        return attempted

    def reap_expired(self) -> int:
        """Delete notifications past their expiry.

        Returns:
            Number of notifications removed
        """
        now = self._now()
        with get_db_session(self._session_factory) as db:
            removed = NotificationStore(db).reap_expired(now)

        self.state.last_reap = now
        self.state.reaped_session += removed
        if removed:
            logger.info(f"Reaped {removed} expired notifications")
        return removed

    def get_status(self) -> dict[str, Any]:
        """Get current dispatcher status.

        Returns:
            Dict with dispatcher status information
        """

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "is_running": self.state.is_running,
            "instance_id": self.owner,
            "started_at": iso(self.state.started_at),
            "last_pending_sweep": iso(self.state.last_pending_sweep),
            "last_retry_sweep": iso(self.state.last_retry_sweep),
            "last_reap": iso(self.state.last_reap),
            "channels": [ch.value for ch in self.registry.configured_channels()],
            "session_stats": {
                "sent": self.state.notifications_sent_session,
                "failed": self.state.notifications_failed_session,
                "channels_disabled": self.state.channels_disabled_session,
                "retries_exhausted": self.state.retries_exhausted_session,
                "reaped": self.state.reaped_session,
                "store_errors": self.state.store_errors_session,
                "errors": self.state.errors_session,
            },
            "retry_policy": {
                "max_retries": self.policy.max_retries,
                "base_delay_minutes": self.policy.base_delay_minutes,
                "backoff_factor": self.policy.backoff_factor,
            },
        }


# Global dispatcher instance
_dispatcher: Dispatcher | None = None


def get_dispatcher(config: Config | None = None) -> Dispatcher:
    """Get the global dispatcher instance.

    Args:
        config: Configuration (defaults to the global configuration)

    Returns:
        The global Dispatcher instance
    """
    global _dispatcher
    if _dispatcher is None:
        if config is None:
            from notifier.utils.config import get_config
            config = get_config()
        _dispatcher = Dispatcher(config)
    return _dispatcher


def reset_dispatcher() -> None:
    """Reset the global dispatcher instance."""
    global _dispatcher
    _dispatcher = None
