"""API routers."""

from microtask_service.routers import accounts, dashboards, health, submissions, tasks, withdrawals

__all__ = ["accounts", "dashboards", "health", "submissions", "tasks", "withdrawals"]
