"""Tests for the dispatcher sweeps and manual dispatch."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from notifier.channels.registry import ChannelRegistry
from notifier.dispatcher.core import Dispatcher, get_dispatcher, reset_dispatcher
from notifier.exceptions import (
    ChannelSendFailed,
    NotificationNotFoundError,
    RetryBudgetExhausted,
    StoreUnavailable,
)
from notifier.models.notification import Channel, Notification, NotificationStatus
from notifier.services.notification_store import NotificationStore
from notifier.utils.config import Config


def reload(session, notification: Notification) -> Notification:
    """Re-read a notification after the dispatcher changed it in another session."""
    session.expire_all()
    return session.get(Notification, notification.id)


class TestPendingSweep:
    """Tests for delivering due pending notifications."""

    @pytest.mark.asyncio
    async def test_delivers_all_channels(self, dispatcher, make_notification, web_sender, wechat_sender, test_db_session, clock):
        notification = make_notification()

        result = await dispatcher.run_pending_sweep()

        assert result.selected == 1
        assert result.sent == 1
        updated = reload(test_db_session, notification)
        assert updated.status == NotificationStatus.SENT
        assert updated.web_sent is True
        assert updated.wechat_sent is True
        assert updated.wechat_sent_at == clock()
        assert updated.wechat_message_id == f"wechat-{notification.id}-1"
        assert updated.lease_owner is None
        assert web_sender.calls == [notification.id]
        assert dispatcher.state.last_pending_sweep == clock()

    @pytest.mark.asyncio
    async def test_urgent_selected_first(self, dispatcher, make_notification, web_sender, clock):
        normal = make_notification(title="Normal", scheduled_for=clock() - timedelta(minutes=30))
        urgent = make_notification(title="Urgent", priority="urgent")

        await dispatcher.run_pending_sweep()

        assert web_sender.calls == [urgent.id, normal.id]

    @pytest.mark.asyncio
    async def test_future_and_expired_are_not_selected(self, dispatcher, make_notification, web_sender, clock):
        make_notification(title="Later", scheduled_for=clock() + timedelta(hours=2))
        make_notification(
            title="Expired",
            scheduled_for=clock() - timedelta(days=3),
            expires_at=clock() - timedelta(days=1),
        )

        result = await dispatcher.run_pending_sweep()

        assert result.selected == 0
        assert web_sender.calls == []

    @pytest.mark.asyncio
    async def test_batch_size_limits_selection(self, test_config, session_factory, registry, clock, make_notification):
        test_config.dispatcher.batch_size = 2
        for i in range(4):
            make_notification(title=f"Item {i}")
        dispatcher = Dispatcher(test_config, session_factory=session_factory, registry=registry, clock=clock)

        result = await dispatcher.run_pending_sweep()

        assert result.selected == 2

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_is_skipped(self, dispatcher, make_notification, web_sender, test_db_session, clock):
        notification = make_notification()
        NotificationStore(test_db_session).claim(
            notification.id, "other-dispatcher", clock(), 120, [NotificationStatus.PENDING]
        )

        result = await dispatcher.run_pending_sweep()

        assert result.skipped == 1
        assert result.claimed == 0
        assert web_sender.calls == []
        assert reload(test_db_session, notification).lease_owner == "other-dispatcher"

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_send_once(
        self, dispatcher, session_factory, registry, clock, make_notification, web_sender, wechat_sender
    ):
        """Two dispatchers sweeping at once deliver each notification once."""
        notification = make_notification()
        web_sender.results = [0.05]
        other = Dispatcher(
            Config(dispatcher={"instance_id": "second-dispatcher", "send_timeout_seconds": 0.5}),
            session_factory=session_factory,
            registry=registry,
            clock=clock,
        )

        first, second = await asyncio.gather(dispatcher.run_pending_sweep(), other.run_pending_sweep())

        assert web_sender.calls == [notification.id]
        assert wechat_sender.calls == [notification.id]
        assert first.claimed + second.claimed == 1
        assert first.skipped + second.skipped == 1

    @pytest.mark.asyncio
    async def test_unconfigured_channel_is_disabled(self, test_config, session_factory, clock, make_notification, web_sender, test_db_session):
        """A channel with no sender is rejected permanently, not retried."""
        notification = make_notification(channels={"email": True, "wechat": False})
        dispatcher = Dispatcher(
            test_config,
            session_factory=session_factory,
            registry=ChannelRegistry({Channel.WEB: web_sender}),
            clock=clock,
        )

        result = await dispatcher.run_pending_sweep()

        assert result.disabled_channels == 1
        updated = reload(test_db_session, notification)
        assert updated.status == NotificationStatus.SENT
        assert updated.email_enabled is False
        assert updated.email_error == "email channel is not configured"
        assert updated.retry_count == 0


class TestRetrySweep:
    """Tests for retrying failed notifications."""

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retry_budget(
        self, dispatcher, make_notification, web_sender, wechat_sender, test_db_session, clock
    ):
        """Repeated WeChat timeouts back off 5, 10 and 20 minutes, then stop."""
        notification = make_notification(priority="high")
        start = clock()
        wechat_sender.results = [asyncio.TimeoutError() for _ in range(4)]

        first = await dispatcher.run_pending_sweep()
        assert first.failed == 1
        updated = reload(test_db_session, notification)
        assert updated.status == NotificationStatus.FAILED
        assert updated.retry_count == 1
        assert updated.next_retry_at == start + timedelta(minutes=5)
        assert updated.web_sent is True
        assert "timed out" in updated.wechat_error

        # Backoff not yet elapsed
        clock.advance(minutes=4)
        assert (await dispatcher.run_retry_sweep()).selected == 0

        clock.advance(minutes=1)
        await dispatcher.run_retry_sweep()
        updated = reload(test_db_session, notification)
        assert updated.retry_count == 2
        assert updated.next_retry_at == clock() + timedelta(minutes=10)

        clock.advance(minutes=10)
        third = await dispatcher.run_retry_sweep()
        updated = reload(test_db_session, notification)
        assert updated.retry_count == 3
        assert updated.next_retry_at == clock() + timedelta(minutes=20)
        assert third.exhausted == 1

        clock.advance(minutes=20)
        assert (await dispatcher.run_retry_sweep()).selected == 0

        assert len(wechat_sender.calls) == 3
        assert web_sender.calls == [notification.id]
        assert dispatcher.state.retries_exhausted_session == 1

    @pytest.mark.asyncio
    async def test_invalid_handle_disables_channel(
        self, dispatcher, make_notification, wechat_sender, test_db_session
    ):
        notification = make_notification()
        wechat_sender.results = [ChannelSendFailed("wechat", "invalid openid (40003)", retryable=False)]

        result = await dispatcher.run_pending_sweep()

        assert result.disabled_channels == 1
        updated = reload(test_db_session, notification)
        assert updated.wechat_enabled is False
        assert updated.wechat_error == "invalid openid (40003)"
        assert updated.retry_count == 0
        assert updated.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_retry_only_resends_failed_channel(
        self, dispatcher, make_notification, web_sender, wechat_sender, test_db_session, clock
    ):
        notification = make_notification()
        wechat_sender.results = [asyncio.TimeoutError()]
        await dispatcher.run_pending_sweep()

        clock.advance(minutes=5)
        result = await dispatcher.run_retry_sweep()

        assert result.sent == 1
        assert web_sender.calls == [notification.id]
        assert wechat_sender.calls == [notification.id, notification.id]
        updated = reload(test_db_session, notification)
        assert updated.status == NotificationStatus.SENT
        assert updated.wechat_error is None
        assert updated.next_retry_at is None

    @pytest.mark.asyncio
    async def test_expired_notification_is_not_retried(
        self, dispatcher, make_notification, wechat_sender, test_db_session, clock
    ):
        notification = make_notification(expires_at=clock() + timedelta(minutes=3))
        wechat_sender.results = [asyncio.TimeoutError()]
        await dispatcher.run_pending_sweep()
        assert reload(test_db_session, notification).retry_count == 1

        clock.advance(minutes=5)
        result = await dispatcher.run_retry_sweep()

        assert result.selected == 0
        assert wechat_sender.calls == [notification.id]
        updated = reload(test_db_session, notification)
        assert updated.status == NotificationStatus.FAILED
        assert updated.retry_count == 1


class TestManualDispatch:
    """Tests for dispatching a single notification on demand."""

    @pytest.mark.asyncio
    async def test_force_ignores_schedule(self, dispatcher, make_notification, web_sender, clock):
        notification = make_notification(scheduled_for=clock() + timedelta(hours=1))

        assert await dispatcher.dispatch_notification(notification.id) is False
        assert web_sender.calls == []

        assert await dispatcher.dispatch_notification(notification.id, force=True) is True
        assert web_sender.calls == [notification.id]

    @pytest.mark.asyncio
    async def test_already_sent_is_not_resent(self, dispatcher, make_notification, web_sender):
        notification = make_notification()
        await dispatcher.dispatch_notification(notification.id)

        assert await dispatcher.dispatch_notification(notification.id, force=True) is False
        assert web_sender.calls == [notification.id]

    @pytest.mark.asyncio
    async def test_not_found(self, dispatcher):
        with pytest.raises(NotificationNotFoundError):
            await dispatcher.dispatch_notification(424242)

    @pytest.mark.asyncio
    async def test_exhausted_raises(self, dispatcher, make_notification, test_db_session):
        notification = make_notification()
        NotificationStore(test_db_session).update(
            notification.id, {"status": NotificationStatus.FAILED, "retry_count": 3, "next_retry_at": None}
        )

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await dispatcher.dispatch_notification(notification.id, force=True)
        assert exc_info.value.retry_count == 3

    @pytest.mark.asyncio
    async def test_expired_is_not_dispatched(self, dispatcher, make_notification, web_sender, clock):
        notification = make_notification()
        clock.advance(days=8)
        assert await dispatcher.dispatch_notification(notification.id, force=True) is False
        assert web_sender.calls == []


class TestStoreFailures:
    """Tests for store outages during sweeps."""

    @pytest.mark.asyncio
    async def test_sweep_propagates_store_unavailable(self, dispatcher, make_notification, web_sender):
        make_notification()
        with patch(
            "notifier.dispatcher.core.NotificationStore.update",
            side_effect=StoreUnavailable("update failed: database is locked"),
        ):
            with pytest.raises(StoreUnavailable):
                await dispatcher.run_pending_sweep()

    @pytest.mark.asyncio
    async def test_failed_update_releases_lease(self, dispatcher, make_notification, test_db_session):
        notification = make_notification()
        with patch(
            "notifier.dispatcher.core.NotificationStore.update",
            side_effect=StoreUnavailable("update failed"),
        ):
            with pytest.raises(StoreUnavailable):
                await dispatcher.run_pending_sweep()

        updated = reload(test_db_session, notification)
        assert updated.lease_owner is None
        assert updated.status == NotificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_scheduled_sweep_counts_store_errors(self, dispatcher):
        with patch.object(
            dispatcher, "run_pending_sweep", new_callable=AsyncMock, side_effect=StoreUnavailable("down")
        ):
            await dispatcher._scheduled_pending_sweep()
        with patch.object(dispatcher, "run_retry_sweep", new_callable=AsyncMock, side_effect=RuntimeError("bug")):
            await dispatcher._scheduled_retry_sweep()

        assert dispatcher.state.store_errors_session == 1
        assert dispatcher.state.errors_session == 1


class TestReap:
    """Tests for expiry reaping."""

    def test_reap_expired(self, dispatcher, make_notification, clock, test_db_session):
        make_notification()
        make_notification(
            title="Old",
            scheduled_for=clock() - timedelta(days=9),
            expires_at=clock() - timedelta(days=2),
        )

        assert dispatcher.reap_expired() == 1
        assert dispatcher.state.reaped_session == 1
        assert dispatcher.state.last_reap == clock()
        test_db_session.expire_all()
        assert test_db_session.query(Notification).count() == 1


class TestDispatcherLifecycle:
    """Tests for start/stop and status."""

    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, dispatcher):
        await dispatcher.start()
        try:
            assert dispatcher.state.is_running is True
            job_ids = {job.id for job in dispatcher._scheduler.get_jobs()}
            assert job_ids == {"pending_sweep", "retry_sweep", "reap_expired"}
        finally:
            await dispatcher.stop()

        assert dispatcher.state.is_running is False
        assert dispatcher._scheduler is None

    @pytest.mark.asyncio
    async def test_start_when_already_running(self, dispatcher):
        dispatcher.state.is_running = True
        original_started_at = dispatcher.state.started_at

        await dispatcher.start()

        assert dispatcher.state.started_at == original_started_at
        assert dispatcher._scheduler is None

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, dispatcher):
        await dispatcher.stop()
        assert dispatcher.state.is_running is False

    @pytest.mark.asyncio
    async def test_close_releases_senders(self, dispatcher, web_sender, wechat_sender):
        await dispatcher.close()
        assert web_sender.closed is True
        assert wechat_sender.closed is True

    def test_get_status(self, dispatcher):
        status = dispatcher.get_status()
        assert status["is_running"] is False
        assert status["instance_id"] == "test-dispatcher"
        assert status["channels"] == ["web", "wechat", "email"]
        assert status["retry_policy"]["max_retries"] == 3
        assert status["session_stats"]["sent"] == 0

    def test_global_dispatcher(self, test_config, registry):
        reset_dispatcher()
        with patch("notifier.dispatcher.core.ChannelRegistry.from_config", return_value=registry):
            first = get_dispatcher(test_config)
            assert get_dispatcher() is first
        reset_dispatcher()
