"""FastAPI application for the Agent Gateway."""

from __future__ import annotations

import logging
import logging.handlers
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .app_state import GatewayState
from .auth import key_matches
from .config import GatewayConfig, config
from .routers.agent import router as agent_router
from .routers.health import router as health_router
from .ws.manager import ConnectionManager

_LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(cfg: GatewayConfig) -> None:
    logging.basicConfig(level=cfg.log_level, format=_LOG_FORMAT)
    if cfg.log_file is not None:
        cfg.log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            cfg.log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def create_app(
    state: GatewayState | None = None,
    api_key: str | None = None,
    cfg: GatewayConfig = config,
) -> FastAPI:
    """Build the gateway app. Tests pass their own state and key."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Agent Gateway starting on %s:%d", cfg.host, cfg.port)
        await app.state.gateway.startup()

        yield

        await app.state.gateway.shutdown()
        logger.info("Agent Gateway stopped")

    app = FastAPI(
        title="Agent Gateway",
        description="HTTP/WebSocket API that runs an agent CLI per request",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.gateway = state or GatewayState.from_config(cfg)
    app.state.api_key = api_key or cfg.api_key
    app.state.ws_manager = ConnectionManager()
    app.state.gateway.jobs.add_listener(app.state.ws_manager.publish_status)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%d ms)",
            request.method, request.url.path, response.status_code, int((time.monotonic() - started) * 1000),
        )
        return response

    app.include_router(health_router)
    app.include_router(agent_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        return {"name": "Agent Gateway", "version": "0.1.0", "health": "/api/agent/health"}

    @app.websocket("/api/ws")
    async def websocket_endpoint(ws: WebSocket, token: str | None = None, request_id: str | None = None):
        """Push ``request_status`` events for all requests, or just ``request_id``.

        Authentication via query param: ws://host/api/ws?token=<api-key>
        """
        if not key_matches(token, app.state.api_key):
            await ws.close(code=4001, reason="Unauthorized")
            return

        manager: ConnectionManager = app.state.ws_manager
        await manager.connect(ws, request_id=request_id)
        try:
            while True:
                # Clients do not send anything; reading detects disconnects.
                await ws.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(ws)
        except Exception:
            manager.disconnect(ws)

    return app


configure_logging(config)
app = create_app()
