"""Agent request, response and queue statistics models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)


class RequestContext(BaseModel):
    """Per-request execution overrides. Accepts camelCase keys from older clients."""

    model_config = ConfigDict(frozen=True)

    working_directory: str | None = Field(
        None, validation_alias=AliasChoices("working_directory", "workingDirectory")
    )
    environment: dict[str, str] | None = None
    timeout_ms: int | None = Field(
        None, ge=1000, le=600_000, validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout")
    )


class RequestSubmission(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=10_000)
    context: RequestContext | None = None
    metadata: dict[str, Any] | None = None
    session_id: str | None = Field(None, validation_alias=AliasChoices("session_id", "sessionId"))


class StreamSubmission(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=10_000)
    context: RequestContext | None = None
    session_id: str | None = Field(None, validation_alias=AliasChoices("session_id", "sessionId"))


class AgentRequest(BaseModel):
    """One submitted unit of work. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str
    context: RequestContext | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AgentResponse(BaseModel):
    """Lifecycle snapshot of a request.

    Snapshots are immutable; the registry swaps in a new snapshot on every
    transition. ``id`` and ``request_id`` carry the same value.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    request_id: str
    status: RequestStatus = RequestStatus.PENDING
    output: str | None = None
    error: str | None = None
    execution_time_ms: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        """The short form returned by submit."""
        return self.model_dump(mode="json", include={"id", "request_id", "status", "created_at"})


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
