"""Request and response schemas of the internal HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Body of a rejected request.

    ``code`` is the gateway error code callers branch on, e.g.
    ``missing_text``, ``missing_telegram_chat_ids``, ``forbidden`` or
    ``lock_timeout``.
    """

    ok: bool = False
    code: str
    message: str
    details: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    ok: bool = True
    version: str
    policy_ok: bool
    projects: int
    senders: list[str] = Field(default_factory=list)


class NotifyResponse(BaseModel):
    """Per target, per chat delivery records of one notify request."""

    ok: bool
    project_id: str | None = None
    sent: dict[str, dict[str, dict[str, Any]]] = Field(default_factory=dict)


class TaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str = Field(..., description="Idempotency key of the task.")
    stage: str = Field("analyze", description="analyze or suggest")
    prompt: str = Field(..., max_length=32_000)
    context: dict[str, Any] | None = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    ok: bool
    task_id: str
    stage: str
    cached: bool = False
    summary: str | None = None
    error: str | None = None
