"""Notification API routes."""

import math
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from notifier.api.dependencies import (
    get_current_user_id,
    get_notification_dispatcher,
    get_notification_service,
)
from notifier.api.schemas import (
    BulkCreateRequest,
    BulkCreateResponse,
    BulkItemResponse,
    ChannelDetail,
    ChannelReport,
    ChannelView,
    DispatchResponse,
    MarkMultipleReadRequest,
    MarkMultipleReadResponse,
    NotificationCreate,
    NotificationDetailResponse,
    NotificationListResponse,
    NotificationResponse,
    NotificationStatistics,
    ReapResponse,
    RecipientIn,
    SweepResponse,
    UnreadCountResponse,
)
from notifier.dispatcher.core import Dispatcher
from notifier.models import Channel, Notification, NotificationPriority, NotificationStatus, NotificationType
from notifier.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])

Service = Annotated[NotificationService, Depends(get_notification_service)]
UserId = Annotated[str, Depends(get_current_user_id)]
DispatcherDep = Annotated[Dispatcher, Depends(get_notification_dispatcher)]


@router.post("", response_model=NotificationDetailResponse, status_code=201)
async def create_notification(
    data: NotificationCreate,
    request: Request,
    service: Service,
    dispatcher: DispatcherDep,
) -> NotificationDetailResponse:
    """Create a notification. Urgent notifications are dispatched immediately."""
    notification = service.create_notification(
        title=data.title,
        content=data.content,
        type=data.type,
        recipient=data.recipient.model_dump(),
        priority=data.priority,
        scheduled_for=data.scheduled_for,
        expires_at=data.expires_at,
        channels=data.channels,
        related_data=data.related_data,
        source=data.source,
        tags=data.tags,
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )

    if notification.priority == NotificationPriority.URGENT and notification.status == NotificationStatus.PENDING:
        await dispatcher.dispatch_notification(notification.id, force=True)
        notification = service.get_notification(notification.id, refresh=True)

    return _notification_to_detail(notification)


@router.post("/bulk", response_model=BulkCreateResponse, status_code=201)
def create_bulk(
    data: BulkCreateRequest,
    service: Service,
) -> BulkCreateResponse:
    """Create many notifications; each item succeeds or fails independently."""
    result = service.create_bulk(data.items)
    return BulkCreateResponse(
        results=[
            BulkItemResponse(
                index=r.index,
                success=r.success,
                notification_id=r.notification_id,
                errors=r.errors,
            )
            for r in result.results
        ],
        success_count=result.success_count,
        failure_count=result.failure_count,
    )


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    service: Service,
    user_id: UserId,
    status: NotificationStatus | None = None,
    type: NotificationType | None = None,
    unread_only: bool = Query(default=False, description="Only notifications not yet read"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> NotificationListResponse:
    """List the caller's notifications, newest first."""
    notifications, total = service.list_notifications(
        user_id,
        status=status,
        type=type,
        unread_only=unread_only,
        page=page,
        limit=limit,
    )
    return NotificationListResponse(
        notifications=[_notification_to_response(n) for n in notifications],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(service: Service, user_id: UserId) -> UnreadCountResponse:
    """Get the caller's unread notification count."""
    return UnreadCountResponse(unread_count=service.unread_count(user_id))


@router.get("/stats", response_model=NotificationStatistics)
def get_statistics(
    service: Service,
    user_id: UserId,
    all_users: bool = Query(default=False, description="Operator totals across all users"),
) -> NotificationStatistics:
    """Get notification statistics."""
    stats = service.get_statistics(None if all_users else user_id)
    return NotificationStatistics(**stats)


@router.put("/read-multiple", response_model=MarkMultipleReadResponse)
def mark_multiple_as_read(
    data: MarkMultipleReadRequest,
    service: Service,
    user_id: UserId,
) -> MarkMultipleReadResponse:
    """Mark several notifications read; all of them when no IDs are given."""
    updated = service.mark_multiple_as_read(user_id, data.notification_ids)
    return MarkMultipleReadResponse(updated=updated)


@router.post("/process-pending", response_model=SweepResponse)
async def process_pending(dispatcher: DispatcherDep) -> SweepResponse:
    """Run one pending sweep now."""
    result = await dispatcher.run_pending_sweep()
    return SweepResponse(**result.to_dict())


@router.post("/retry-failed", response_model=SweepResponse)
async def retry_failed(dispatcher: DispatcherDep) -> SweepResponse:
    """Run one retry sweep now."""
    result = await dispatcher.run_retry_sweep()
    return SweepResponse(**result.to_dict())


@router.post("/reap-expired", response_model=ReapResponse)
def reap_expired(dispatcher: DispatcherDep) -> ReapResponse:
    """Delete expired notifications now."""
    return ReapResponse(removed=dispatcher.reap_expired())


@router.get("/{notification_id}", response_model=NotificationDetailResponse)
def get_notification(notification_id: int, service: Service) -> NotificationDetailResponse:
    """Get full notification detail, including retry counters and transport errors."""
    return _notification_to_detail(service.get_notification(notification_id))


@router.put("/{notification_id}/read", response_model=NotificationResponse)
def mark_as_read(notification_id: int, service: Service, user_id: UserId) -> NotificationResponse:
    """Mark a notification read. Repeating the call has no further effect."""
    return _notification_to_response(service.mark_as_read(notification_id, user_id))


@router.put("/{notification_id}/delivered", response_model=NotificationResponse)
def mark_as_delivered(notification_id: int, service: Service) -> NotificationResponse:
    """Record transport confirmation for a sent notification."""
    return _notification_to_response(service.mark_delivered(notification_id))


@router.put("/{notification_id}/channels/{channel}", response_model=NotificationDetailResponse)
def report_channel_outcome(
    notification_id: int,
    channel: Channel,
    report: ChannelReport,
    service: Service,
) -> NotificationDetailResponse:
    """Record the outcome of a send performed outside the dispatcher."""
    if report.success:
        notification = service.mark_sent(notification_id, channel, report.message_id)
    else:
        notification = service.mark_failed(
            notification_id, channel, report.error or "reported failure", report.retryable
        )
    return _notification_to_detail(notification)


@router.delete("/{notification_id}", status_code=204)
def delete_notification(notification_id: int, service: Service, user_id: UserId) -> Response:
    """Delete a notification from the caller's feed."""
    service.delete_notification(notification_id, user_id)
    return Response(status_code=204)


@router.post("/{notification_id}/send", response_model=DispatchResponse)
async def send_notification(
    notification_id: int,
    service: Service,
    dispatcher: DispatcherDep,
) -> DispatchResponse:
    """Force immediate dispatch, ignoring the scheduled time (not expiry)."""
    attempted = await dispatcher.dispatch_notification(notification_id, force=True)
    notification = service.get_notification(notification_id, refresh=True)
    return DispatchResponse(notification_id=notification_id, attempted=attempted, status=notification.status)


def _channel_views(notification: Notification) -> dict[str, ChannelView]:
    views = {}
    for ch in Channel:
        state = notification.channel_state(ch)
        views[ch.value] = ChannelView(
            enabled=state["enabled"],
            sent=state["sent"],
            read=state.get("read"),
            read_at=state.get("read_at"),
        )
    return views


def _notification_to_response(notification: Notification) -> NotificationResponse:
    """Convert Notification model to the recipient-facing schema."""
    return NotificationResponse(
        id=notification.id,
        title=notification.title,
        content=notification.content,
        type=notification.type,
        priority=notification.priority,
        status=notification.status,
        channels=_channel_views(notification),
        related_data=notification.related_data(),
        tags=notification.get_tags_list(),
        scheduled_for=notification.scheduled_for,
        expires_at=notification.expires_at,
        created_at=notification.created_at,
    )


def _notification_to_detail(notification: Notification) -> NotificationDetailResponse:
    """Convert Notification model to the operator detail schema."""
    return NotificationDetailResponse(
        id=notification.id,
        title=notification.title,
        content=notification.content,
        type=notification.type,
        priority=notification.priority,
        status=notification.status,
        channels={ch.value: ChannelDetail(**notification.channel_state(ch)) for ch in Channel},
        related_data=notification.related_data(),
        tags=notification.get_tags_list(),
        scheduled_for=notification.scheduled_for,
        expires_at=notification.expires_at,
        created_at=notification.created_at,
        recipient=RecipientIn(
            user_id=notification.recipient_user_id,
            username=notification.recipient_username,
            email=notification.recipient_email,
            wechat_open_id=notification.recipient_wechat_open_id,
        ),
        retry_count=notification.retry_count,
        last_retry_at=notification.last_retry_at,
        next_retry_at=notification.next_retry_at,
        source=notification.source,
        user_agent=notification.user_agent,
        client_ip=notification.client_ip,
        updated_at=notification.updated_at,
    )
