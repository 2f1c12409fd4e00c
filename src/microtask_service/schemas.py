"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_accounts: int
    total_coins: int
    total_escrowed: int
    tasks_by_status: dict[str, int]
    pending_submissions: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class AccountResponse(BaseModel):
    """Response model for a single account."""

    model_config = ConfigDict(extra="forbid")
    account_id: str
    role: str
    balance: int
    created_at: str


class TaskResponse(BaseModel):
    """Full task detail response model."""

    model_config = ConfigDict(extra="forbid")
    task_id: str
    buyer_id: str
    title: str
    detail: str
    submission_info: str
    required_workers: int
    remaining_workers: int
    payable_amount: int
    escrow_remaining: int
    completion_date: str
    status: str
    created_at: str
    updated_at: str | None
    closed_at: str | None
    cancelled_at: str | None


class TaskListResponse(BaseModel):
    """Response model for GET /tasks."""

    model_config = ConfigDict(extra="forbid")
    tasks: list[TaskResponse]
