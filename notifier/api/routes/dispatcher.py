"""Dispatcher API routes for starting, stopping and monitoring delivery."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from notifier.api.dependencies import get_notification_dispatcher
from notifier.api.schemas import DispatcherStatusResponse
from notifier.dispatcher.core import Dispatcher

router = APIRouter(prefix="/dispatcher", tags=["dispatcher"])

DispatcherDep = Annotated[Dispatcher, Depends(get_notification_dispatcher)]


@router.get("/status", response_model=DispatcherStatusResponse)
def get_dispatcher_status(dispatcher: DispatcherDep) -> DispatcherStatusResponse:
    """Get current dispatcher status."""
    return DispatcherStatusResponse(**dispatcher.get_status())


@router.post("/start", response_model=DispatcherStatusResponse)
async def start_dispatcher(dispatcher: DispatcherDep) -> DispatcherStatusResponse:
    """Start the scheduled sweeps."""
    if dispatcher.state.is_running:
        raise HTTPException(status_code=400, detail="Dispatcher is already running")

    await dispatcher.start()
    return DispatcherStatusResponse(**dispatcher.get_status())


@router.post("/stop", response_model=DispatcherStatusResponse)
async def stop_dispatcher(dispatcher: DispatcherDep) -> DispatcherStatusResponse:
    """Stop the scheduled sweeps."""
    if not dispatcher.state.is_running:
        raise HTTPException(status_code=400, detail="Dispatcher is not running")

    await dispatcher.stop()
    return DispatcherStatusResponse(**dispatcher.get_status())
