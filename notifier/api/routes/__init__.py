"""API routes."""

from notifier.api.routes.dispatcher import router as dispatcher_router
from notifier.api.routes.notifications import router as notifications_router

__all__ = ["dispatcher_router", "notifications_router"]
