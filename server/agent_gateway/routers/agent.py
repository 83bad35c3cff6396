"""Agent request submission, status, statistics and streaming endpoints."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from ..app_state import GatewayState
from ..auth import require_auth
from ..deps import get_gateway_state, get_job_service, get_stream_relay
from ..errors import PromptValidationError
from ..models.requests import RequestSubmission, StreamSubmission
from ..services.job_service import JobSubmissionService, validate_prompt
from ..services.stream_relay import QueueSink, StreamRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agent", tags=["agent"], dependencies=[Depends(require_auth)])

# Streaming relays outlive a disconnected client until their process is gone.
_relay_tasks: set[asyncio.Task] = set()


@router.post("/requests", status_code=202)
async def submit_request(body: RequestSubmission, jobs: JobSubmissionService = Depends(get_job_service)) -> dict:
    """Submit a prompt for background execution."""
    try:
        response = await jobs.submit(
            body.prompt,
            context=body.context,
            metadata=body.metadata,
            session_id=body.session_id,
        )
    except PromptValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"data": response.summary(), "message": "Request accepted and queued for processing"}


@router.get("/requests")
async def list_requests(jobs: JobSubmissionService = Depends(get_job_service)) -> dict:
    """List all retained requests, newest first."""
    return {"data": [r.model_dump(mode="json") for r in jobs.list_requests()]}


@router.get("/requests/{request_id}")
async def get_request(request_id: str, jobs: JobSubmissionService = Depends(get_job_service)) -> dict:
    response = jobs.get_status(request_id)
    if response is None:
        raise HTTPException(status_code=404, detail=f"Request {request_id} not found")
    return {"data": response.model_dump(mode="json")}


@router.post("/requests/{request_id}/cancel")
async def cancel_request(request_id: str, jobs: JobSubmissionService = Depends(get_job_service)) -> dict:
    """Cancel a pending or processing request."""
    cancelled = await jobs.cancel(request_id)
    if not cancelled:
        raise HTTPException(status_code=400, detail="Request cannot be cancelled (not found or already finished)")
    return {"success": True, "requestId": request_id}


@router.get("/stats")
async def get_stats(jobs: JobSubmissionService = Depends(get_job_service)) -> dict:
    return {"data": jobs.get_stats().model_dump()}


@router.delete("/sessions/{session_id}")
async def clear_session(session_id: str, state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Forget a conversation session's history."""
    if not await state.sessions.clear(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True, "sessionId": session_id}


@router.post("/stream")
async def stream_request(body: StreamSubmission, relay: StreamRelay = Depends(get_stream_relay)) -> StreamingResponse:
    """Run a prompt and stream its output as Server-Sent Events.

    Events: ``status`` (processing), ``chunk`` per stdout fragment, then either
    ``status`` (completed) or ``error``, followed by ``[DONE]``.
    """
    try:
        validate_prompt(body.prompt, relay.max_prompt_length)
    except PromptValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    sink = QueueSink()
    cancel_event = asyncio.Event()

    async def run_relay() -> None:
        try:
            await relay.stream(
                body.prompt,
                body.context,
                sink,
                session_id=body.session_id,
                cancel_event=cancel_event,
            )
        except Exception as exc:
            logger.exception("Streaming relay failed")
            await sink.on_error(f"Internal error: {exc}")

    async def event_stream():
        yield _sse({"type": "status", "status": "processing", "message": "Starting agent response..."})
        task = asyncio.create_task(run_relay())
        _relay_tasks.add(task)
        task.add_done_callback(_relay_tasks.discard)
        try:
            async for event in sink.events():
                yield _sse(event)
            yield "data: [DONE]\n\n"
        finally:
            if not task.done():
                # Client went away mid-stream; stop the agent.
                cancel_event.set()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"
