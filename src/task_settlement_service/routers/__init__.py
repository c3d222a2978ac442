"""API routers."""

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

__all__ = ["applicants", "drafts", "events", "health", "payments", "stages", "tasks", "users"]
