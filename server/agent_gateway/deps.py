"""FastAPI dependencies for resolving gateway services."""

from __future__ import annotations

from fastapi import Request

from .app_state import GatewayState
from .services.job_service import JobSubmissionService
from .services.stream_relay import StreamRelay


async def get_gateway_state(request: Request) -> GatewayState:
    return request.app.state.gateway


async def get_job_service(request: Request) -> JobSubmissionService:
    return request.app.state.gateway.jobs


async def get_stream_relay(request: Request) -> StreamRelay:
    return request.app.state.gateway.relay
