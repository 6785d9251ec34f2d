"""Notification store: the single source of truth for delivery state.

All writes to an existing notification are targeted column updates so that
concurrent writers touching different fields do not overwrite each other.
"""

import logging
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Query, Session

from notifier.delivery.state import Mutation
from notifier.exceptions import StoreUnavailable
from notifier.models.notification import (
    Channel,
    Notification,
    NotificationStatus,
    NotificationType,
    channel_column,
)

logger = logging.getLogger(__name__)

UNREAD_STATUSES = [NotificationStatus.PENDING, NotificationStatus.SENT, NotificationStatus.DELIVERED]


def unread_criteria() -> tuple:
    """Filter for web-unread notifications that can still reach the user."""
    return (Notification.web_read.is_(False), Notification.status.in_(UNREAD_STATUSES))


class NotificationStore:
    """Persistence operations for notifications."""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, operation: str) -> Generator[None, None, None]:
        """Translate connection-level database errors into StoreUnavailable."""
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            self.db.rollback()
            logger.error(f"Notification store unavailable during {operation}: {e}")
            raise StoreUnavailable(f"{operation} failed: {e}") from e

    def _active(self) -> Query:
        return self.db.query(Notification).filter(Notification.deleted_at.is_(None))

    def create(self, notification: Notification) -> Notification:
        """Persist a new notification."""
        with self._guard("create"):
            self.db.add(notification)
            self.db.commit()
            self.db.refresh(notification)
        return notification

    def get(self, notification_id: int, include_deleted: bool = False) -> Notification | None:
        """Get a notification by ID."""
        with self._guard("get"):
            query = self.db.query(Notification) if include_deleted else self._active()
            return query.filter(Notification.id == notification_id).first()

    def list_for_user(
        self,
        user_id: str,
        *,
        status: NotificationStatus | None = None,
        type: NotificationType | None = None,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Notification], int]:
        """List a user's notifications, newest first.

        Returns:
            Tuple of (notifications, total_count)
        """
        with self._guard("list_for_user"):
            query = self._active().filter(Notification.recipient_user_id == user_id)
            if status is not None:
                query = query.filter(Notification.status == status)
            if type is not None:
                query = query.filter(Notification.type == type)
            if unread_only:
                query = query.filter(*unread_criteria())

            total = query.count()
            items = (
                query.order_by(Notification.created_at.desc(), Notification.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        return items, total

    def count_unread(self, user_id: str) -> int:
        """Count web-unread notifications that are still live for the user."""
        with self._guard("count_unread"):
            return (
                self._active()
                .filter(Notification.recipient_user_id == user_id, *unread_criteria())
                .count()
            )

    def list_pending_due(self, now: datetime, limit: int | None = None) -> list[Notification]:
        """Pending notifications whose scheduled time has come and that have not expired.

        Ordered by priority (urgent first), then by scheduled time.
        """
        with self._guard("list_pending_due"):
            query = (
                self._active()
                .filter(
                    Notification.status == NotificationStatus.PENDING,
                    Notification.scheduled_for <= now,
                    Notification.expires_at > now,
                )
                .order_by(Notification.priority_rank.desc(), Notification.scheduled_for.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def list_retryable_due(
        self, now: datetime, max_retries: int, limit: int | None = None
    ) -> list[Notification]:
        """Failed notifications with retry budget left whose backoff has elapsed."""
        with self._guard("list_retryable_due"):
            query = (
                self._active()
                .filter(
                    Notification.status == NotificationStatus.FAILED,
                    Notification.retry_count < max_retries,
                    Notification.next_retry_at.is_not(None),
                    Notification.next_retry_at <= now,
                    Notification.expires_at > now,
                )
                .order_by(Notification.priority_rank.desc(), Notification.next_retry_at.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def claim(
        self,
        notification_id: int,
        owner: str,
        now: datetime,
        lease_seconds: int,
        statuses: Iterable[NotificationStatus],
    ) -> bool:
        """Atomically lease a notification for processing.

        The conditional update only succeeds if the notification is still in
        one of ``statuses`` and no live lease is held, including one held by
        the same owner (a second sweep in this process must not resend).

        Returns:
            True if this owner now holds the lease
        """
        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.deleted_at.is_(None),
                Notification.status.in_(list(statuses)),
                or_(
                    Notification.lease_expires_at.is_(None),
                    Notification.lease_expires_at <= now,
                ),
            )
            .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        with self._guard("claim"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount == 1

    def release(self, notification_id: int, owner: str) -> None:
        """Drop a lease held by ``owner``."""
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._guard("release"):
            self.db.execute(stmt)
            self.db.commit()

    def update(self, notification_id: int, mutation: Mutation, *, release_lease: bool = False) -> bool:
        """Apply a targeted field update.

        Args:
            notification_id: Notification to update
            mutation: Column name to new value
            release_lease: Also clear the dispatcher lease

        Returns:
            True if a row was updated
        """
        values: dict[str, Any] = dict(mutation)
        if release_lease:
            values["lease_owner"] = None
            values["lease_expires_at"] = None
        if not values:
            return False

        stmt = (
            update(Notification)
            .where(Notification.id == notification_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._guard("update"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount == 1

    def mark_many_read(self, user_id: str, notification_ids: list[int] | None, now: datetime) -> int:
        """Mark several notifications read; all unread ones when no IDs are given.

        Returns:
            Number of notifications modified
        """
        stmt = update(Notification).where(
            Notification.recipient_user_id == user_id,
            Notification.deleted_at.is_(None),
            Notification.web_read.is_(False),
        )
        if notification_ids:
            stmt = stmt.where(Notification.id.in_(notification_ids))
        stmt = stmt.values(
            web_read=True,
            web_read_at=now,
            web_sent=True,
            web_sent_at=func.coalesce(Notification.web_sent_at, now),
            status=NotificationStatus.READ,
            next_retry_at=None,
        ).execution_options(synchronize_session=False)

        with self._guard("mark_many_read"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount

    def soft_delete(self, notification_id: int, user_id: str, now: datetime) -> bool:
        """Logically delete a user's notification."""
        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.recipient_user_id == user_id,
                Notification.deleted_at.is_(None),
            )
            .values(deleted_at=now, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._guard("soft_delete"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount == 1

    def reap_expired(self, now: datetime) -> int:
        """Physically delete every notification past its expiry, regardless of status.

        Returns:
            Number of notifications removed
        """
        stmt = (
            delete(Notification)
            .where(Notification.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        with self._guard("reap_expired"):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount

    def statistics(self, user_id: str | None = None, max_retries: int = 3) -> dict[str, Any]:
        """Aggregate counters, for one user or across all users."""

        def scoped(query: Query) -> Query:
            query = query.filter(Notification.deleted_at.is_(None))
            if user_id is not None:
                query = query.filter(Notification.recipient_user_id == user_id)
            return query

        with self._guard("statistics"):
            total = scoped(self.db.query(func.count(Notification.id))).scalar() or 0
            unread = (
                scoped(self.db.query(func.count(Notification.id)))
                .filter(*unread_criteria())
                .scalar()
                or 0
            )

            by_status = dict(
                scoped(self.db.query(Notification.status, func.count(Notification.id)))
                .group_by(Notification.status)
                .all()
            )
            by_type = dict(
                scoped(self.db.query(Notification.type, func.count(Notification.id)))
                .group_by(Notification.type)
                .all()
            )
            by_priority = dict(
                scoped(self.db.query(Notification.priority, func.count(Notification.id)))
                .group_by(Notification.priority)
                .all()
            )

            channels = {}
            for ch in Channel:
                enabled_col = getattr(Notification, channel_column(ch, "enabled"))
                sent_col = getattr(Notification, channel_column(ch, "sent"))
                error_col = getattr(Notification, channel_column(ch, "error"))
                channels[ch.value] = {
                    "enabled": scoped(self.db.query(func.count(Notification.id))).filter(enabled_col.is_(True)).scalar() or 0,
                    "sent": scoped(self.db.query(func.count(Notification.id))).filter(sent_col.is_(True)).scalar() or 0,
                    "errors": scoped(self.db.query(func.count(Notification.id))).filter(error_col.is_not(None)).scalar() or 0,
                }

            failed = scoped(self.db.query(func.count(Notification.id))).filter(
                Notification.status == NotificationStatus.FAILED
            )
            retrying = (
                failed.filter(
                    Notification.retry_count < max_retries,
                    Notification.next_retry_at.is_not(None),
                ).scalar()
                or 0
            )

        failed_total = by_status.get(NotificationStatus.FAILED, 0)
        return {
            "total": total,
            "unread": unread,
            "by_status": {s.value: by_status.get(s, 0) for s in NotificationStatus},
            "by_type": {t.value: by_type.get(t, 0) for t in NotificationType},
            "by_priority": {p.value: c for p, c in by_priority.items()},
            "channels": channels,
            "retrying": retrying,
            "terminally_failed": failed_total - retrying,
        }
