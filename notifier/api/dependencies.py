"""FastAPI dependency injection helpers."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from notifier.dispatcher.core import Dispatcher, get_dispatcher
from notifier.models import get_db
from notifier.services.notification_service import NotificationService


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Identify the caller from the X-User-Id header.

    Authentication happens upstream; this service trusts the gateway.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    """Dependency to get notification service."""
    return NotificationService(db)


def get_notification_dispatcher() -> Dispatcher:
    """Dependency to get the process-wide dispatcher."""
    return get_dispatcher()
