from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.config import settings
from ..middlewares import principal_ctx_var
from ..services.registry import TimerManagerRegistry
from ..services.timer import TimerLifecycleManager


def _unauthorized(detail: str = "Unauthorized") -> None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def require_operator(
    request: Request,
    x_operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str:
    """Resolve the calling operator; the host application authenticates them."""

    api_key = settings.API_KEY
    if api_key:
        provided = (x_api_key or "").strip()
        if not provided or not hmac.compare_digest(api_key, provided):
            _unauthorized("Invalid API key")
    operator_id = (x_operator_id or "").strip()
    if not operator_id:
        _unauthorized("X-Operator-Id header required")
    principal = f"operator:{operator_id}"
    principal_ctx_var.set(principal)
    request.state.principal = principal
    return operator_id


def get_registry(request: Request) -> TimerManagerRegistry:
    return request.app.state.timer_registry


def get_timer_manager(
    operator_id: str = Depends(require_operator),
    registry: TimerManagerRegistry = Depends(get_registry),
) -> TimerLifecycleManager:
    return registry.get(operator_id)


async def require_privileged(
    operator_id: str = Depends(require_operator),
    registry: TimerManagerRegistry = Depends(get_registry),
) -> str:
    if not await registry.store.is_privileged(operator_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return operator_id
