from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..core.config import settings
from ..core.errors import timer_error_response
from ..deps.operator import get_registry, get_timer_manager, require_privileged
from ..schemas.timer import ActiveTimerOut, ClearAllOut, TimerResult
from ..services.registry import TimerManagerRegistry
from ..services.timer import TimerLifecycleManager

router = APIRouter(
    prefix="/api/v1/admin/timers",
    tags=["admin"],
    dependencies=[Depends(require_privileged)],
)

REASON_QUERY = Query(default=None, max_length=500, description="Why the timer is being discarded.")


@router.get("", response_model=list[ActiveTimerOut])
async def api_active_timers(registry: TimerManagerRegistry = Depends(get_registry)):
    return await registry.store.list_active_timers()


@router.get("/stale", response_model=list[ActiveTimerOut])
async def api_stale_timers(registry: TimerManagerRegistry = Depends(get_registry)):
    threshold = settings.STALE_TIMER_HOURS * 60
    return [t for t in await registry.store.list_active_timers() if t.elapsed_minutes >= threshold]


@router.delete("/{ticket_id}", response_model=TimerResult)
async def api_clear_server_flag(
    ticket_id: str,
    reason: str | None = REASON_QUERY,
    manager: TimerLifecycleManager = Depends(get_timer_manager),
):
    result = await manager.clear_server_flag(ticket_id, reason=reason)
    if not result.ok and result.error is not None:
        return timer_error_response(result.error)
    return result


@router.post("/clear-all", response_model=ClearAllOut)
async def api_clear_all_timers(
    reason: str | None = REASON_QUERY,
    registry: TimerManagerRegistry = Depends(get_registry),
    manager: TimerLifecycleManager = Depends(get_timer_manager),
):
    cleared = 0
    errors: list[dict[str, str]] = []
    for timer in await registry.store.list_active_timers():
        result = await manager.clear_server_flag(timer.ticket_id, reason=reason)
        if result.ok:
            cleared += 1
        elif result.error is not None:
            errors.append({"ticket_id": timer.ticket_id, "error": result.error.message})
    return ClearAllOut(cleared=cleared, errors=errors)
