"""Application factory and top-level wiring for the bench timer service.

``create_app`` brings together configuration, logging, the database schema,
the per-operator timer registry, middlewares, routers and error handling.
Tests call it with their own session factory and storage directory; the
module-level ``app`` is what ``uvicorn benchtimer.main:app`` serves.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import settings
from .core.errors import (
    PersistenceError,
    http_exception_handler,
    persistence_exception_handler,
    validation_exception_handler,
)
from .core.logging import configure_logging
from .db.migrate import run_migrations
from .db.session import Base, SessionLocal, get_db
from .middlewares import ApiHeadersMiddleware, RequestIdMiddleware
from .routers import api_admin, api_tickets, api_timer
from .services.registry import TimerManagerRegistry
from .services.store import SqlTicketTimeStore

# Importing the models registers them with the metadata.
from .models import operator as _operator  # noqa: F401
from .models import ticket as _ticket  # noqa: F401
from .models import time_entry as _time_entry  # noqa: F401


def create_app(
    session_factory: sessionmaker | None = None,
    storage_dir: Path | None = None,
    registry: TimerManagerRegistry | None = None,
    instrument: bool = True,
) -> FastAPI:
    factory = session_factory or SessionLocal
    engine = factory.kw["bind"]
    Base.metadata.create_all(bind=engine)
    run_migrations(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.timer_registry.close()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.session_factory = factory
    app.state.timer_registry = registry or TimerManagerRegistry(
        SqlTicketTimeStore(factory),
        storage_dir=storage_dir if storage_dir is not None else settings.local_state_dir,
    )

    if session_factory is not None:
        def _get_db():
            db = factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    app.add_middleware(ApiHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PersistenceError, persistence_exception_handler)

    app.include_router(api_timer.router)
    app.include_router(api_admin.router)
    app.include_router(api_tickets.router)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    if instrument:
        Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
app = create_app()

__all__ = ["app", "create_app"]
