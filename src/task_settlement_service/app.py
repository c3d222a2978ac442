"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from task_settlement_service.config import get_settings
from task_settlement_service.core.exceptions import register_exception_handlers
from task_settlement_service.core.lifespan import lifespan
from task_settlement_service.core.middleware import RequestValidationMiddleware
from task_settlement_service.routers import (
    applicants,
    drafts,
    events,
    health,
    payments,
    stages,
    tasks,
    users,
)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(drafts.router, tags=["Drafts"])
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(applicants.router, tags=["Applicants"])
    app.include_router(stages.router, tags=["Stages"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(users.router, tags=["Users"])
    app.include_router(events.router, tags=["Events"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
