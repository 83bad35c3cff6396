"""WebSocket connection manager that pushes request status changes."""

from __future__ import annotations

import json
import logging

from fastapi import WebSocket

from ..models.requests import AgentResponse

logger = logging.getLogger(__name__)

_ALL = "_all"


class ConnectionManager:
    """Tracks WebSocket clients, optionally subscribed to a single request id."""

    def __init__(self) -> None:
        # request_id (or _ALL) -> list of WebSocket connections
        self._connections: dict[str, list[WebSocket]] = {}
        # reverse lookup: ws -> subscription key
        self._ws_key: dict[int, str] = {}

    @property
    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    async def connect(self, ws: WebSocket, request_id: str | None = None) -> None:
        await ws.accept()
        key = request_id or _ALL
        self._connections.setdefault(key, []).append(ws)
        self._ws_key[id(ws)] = key
        logger.info("WebSocket client connected for '%s' (%d total)", key, self.connection_count)

    def disconnect(self, ws: WebSocket) -> None:
        key = self._ws_key.pop(id(ws), _ALL)
        if key in self._connections:
            if ws in self._connections[key]:
                self._connections[key].remove(ws)
            if not self._connections[key]:
                del self._connections[key]
        logger.info("WebSocket client disconnected (%d total)", self.connection_count)

    async def broadcast(self, event_type: str, data: dict, request_id: str | None = None) -> None:
        """Send an event to clients watching everything and to those watching ``request_id``."""
        targets = list(self._connections.get(_ALL, []))
        if request_id:
            targets += self._connections.get(request_id, [])
        if not targets:
            return

        message = json.dumps({"type": event_type, "data": data})
        disconnected: list[WebSocket] = []

        for ws in targets:
            try:
                await ws.send_text(message)
            except Exception:
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)

    async def publish_status(self, response: AgentResponse) -> None:
        """Status listener registered with the job service."""
        await self.broadcast("request_status", response.model_dump(mode="json"), request_id=response.request_id)
