"""Timer endpoints for the calling operator.

Failed operations answer with the error envelope; ``details`` carries the
full timer result so the client can redraw its state. Status reads answer
200 even when a conflict is detected, since the read itself succeeded.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..core.errors import timer_error_response
from ..deps.operator import get_timer_manager
from ..schemas.timer import StartTimerIn, StopTimerIn, TimerErrorCode, TimerResult
from ..services.timer import TimerLifecycleManager

router = APIRouter(prefix="/api/v1", tags=["timer"])


def _respond(result: TimerResult):
    if result.ok or result.error is None:
        return result
    return timer_error_response(result.error, details=result.model_dump(mode="json", by_alias=True, exclude={"error"}))


# Status reads report conflicts in the body; only a failed read is an HTTP error.
STATUS_READ_FAILURES = (TimerErrorCode.PERSISTENCE_FAILURE, TimerErrorCode.TICKET_NOT_FOUND)


def _status(result: TimerResult):
    if result.error is not None and result.error.code in STATUS_READ_FAILURES:
        return _respond(result)
    return result


@router.get("/timer", response_model=TimerResult)
async def api_timer_status(manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _status(await manager.get_status())


@router.get("/tickets/{ticket_id}/timer", response_model=TimerResult)
async def api_ticket_timer_status(ticket_id: str, manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _status(await manager.get_status(ticket_id))


@router.post("/tickets/{ticket_id}/timer/start", response_model=TimerResult)
async def api_start_timer(
    ticket_id: str,
    payload: StartTimerIn | None = None,
    manager: TimerLifecycleManager = Depends(get_timer_manager),
):
    payload = payload or StartTimerIn()
    result = await manager.start(
        ticket_id,
        payload.ticket_number,
        payload.customer_name,
        override=payload.override,
    )
    return _respond(result)


@router.post("/timer/pause", response_model=TimerResult)
async def api_pause_timer(manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _respond(manager.pause())


@router.post("/timer/resume", response_model=TimerResult)
async def api_resume_timer(manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _respond(await manager.resume())


@router.post("/timer/stop", response_model=TimerResult)
async def api_stop_timer(payload: StopTimerIn, manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _respond(await manager.stop(payload.notes))


@router.post("/tickets/{ticket_id}/timer/recover", response_model=TimerResult)
async def api_recover_timer(ticket_id: str, manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _respond(await manager.recover_timer(ticket_id))


@router.delete("/timer/local", response_model=TimerResult)
async def api_clear_local_timer(manager: TimerLifecycleManager = Depends(get_timer_manager)):
    return _respond(manager.clear_local())
