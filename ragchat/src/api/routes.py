"""
RagChat - HTTP Routes
======================
Thin controllers: parse the request, delegate to the orchestrator or
the indexer, shape the response.  No business logic lives here.

    POST /chat          {message, sessionId?} → {response, sessionId}
    POST /chat/stream   {message, sessionId?} → text/event-stream
    POST /upload        multipart ``file``    → {filename, status}
    GET  /health

Errors raised by the core (``RagChatError``) are turned into
``{"status": ..., "error": ...}`` bodies by the handlers registered in
``main.create_app``.

SSE frames::

    data: {"token": "..."}
    data: {"end": true}                                  (terminal)
    data: {"error": {"status": 500, "error": "..."}}     (terminal)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import StreamingResponse

from ragchat.src.api.schemas import ChatRequest, ChatResponse, HealthResponse, UploadResponse
from ragchat.src.core.channels import StreamChannel
from ragchat.src.core.container import Services
from ragchat.src.core.models import StreamEvent
from ragchat.src.utils.logger import get_logger
from ragchat.src.utils.text_utils import safe_filename

logger = get_logger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def resolve_session_id(session_id: str | None) -> str:
    if session_id and session_id.strip():
        return session_id
    return str(uuid.uuid4())


def sse(event: StreamEvent) -> bytes:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n".encode("utf-8")


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
async def chat(req: ChatRequest, services: Services = Depends(get_services)) -> ChatResponse:
    session_id = resolve_session_id(req.session_id)
    logger.info("Received non-streaming chat request for session: %s", session_id)
    reply = await services.orchestrator.complete(session_id, req.message or "")
    return ChatResponse(response=reply, session_id=session_id)


@router.post("/chat/stream")
async def chat_stream(req: ChatRequest, services: Services = Depends(get_services)) -> StreamingResponse:
    session_id = resolve_session_id(req.session_id)
    handle = services.orchestrator.start_stream(session_id, req.message or "")
    registry = services.orchestrator.channels

    async def gen(channel: StreamChannel) -> AsyncIterator[bytes]:
        try:
            async for event in channel:
                yield sse(event)
        finally:
            # Client gone or stream finished: either way this channel is done.
            registry.close(session_id, channel)
            logger.info("[STREAM] Consumer for session %s detached.", session_id)

    return StreamingResponse(
        gen(handle.channel),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Session-Id": session_id,
        },
    )


@router.post("/upload", response_model=UploadResponse)
async def upload(file: UploadFile = File(...), services: Services = Depends(get_services)) -> UploadResponse:
    data = await file.read()
    status = await services.indexer.upload(data, file.filename or "")
    name = safe_filename(file.filename or "") or ""
    logger.info("File uploaded: %s (%s)", name, status.value)
    return UploadResponse(filename=name, status=status.value)


@router.get("/health", response_model=HealthResponse)
async def health(services: Services = Depends(get_services)) -> HealthResponse:
    return HealthResponse(status="ok", active_streams=services.orchestrator.active_streams)
