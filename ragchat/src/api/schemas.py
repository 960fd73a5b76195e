from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Blank messages are rejected by the orchestrator, not here, so the
    # error body matches every other RagChat error.
    message: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    session_id: str = Field(alias="sessionId")


class ErrorResponse(BaseModel):
    status: int
    error: str


class UploadResponse(BaseModel):
    filename: str
    status: str


class HealthResponse(BaseModel):
    status: str = "ok"
    active_streams: int = 0
