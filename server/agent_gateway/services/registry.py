"""Request registry: request id -> latest AgentResponse snapshot, plus queue counters."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..errors import RequestNotFoundError
from ..models.requests import AgentRequest, AgentResponse, QueueStats, RequestStatus, utcnow

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING, RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.PROCESSING: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}


class RequestRegistry:
    """Thread-safe store of response snapshots.

    Each request has a single writer (the job service task that owns it) and
    any number of readers. Snapshots are immutable and replaced wholesale under
    the lock, so readers never see a partially applied update.

    Counters are kept incrementally: ``waiting`` counts records not yet
    processing, ``active`` counts records not yet terminal, and ``completed`` /
    ``failed`` are cumulative and survive eviction.
    """

    def __init__(self, persist_dir: Path | None = None) -> None:
        self._responses: dict[str, AgentResponse] = {}
        self._lock = threading.Lock()
        self._stats = QueueStats()
        self._persist_dir = persist_dir
        if self._persist_dir is not None:
            self._persist_dir.mkdir(parents=True, exist_ok=True)
            self._load_persisted(self._persist_dir)

    def create(self, request: AgentRequest) -> AgentResponse:
        response = AgentResponse(
            id=request.id,
            request_id=request.id,
            created_at=request.created_at,
            metadata=request.metadata,
        )
        with self._lock:
            if request.id in self._responses:
                raise ValueError(f"Duplicate request id: {request.id}")
            self._responses[request.id] = response
            self._stats.waiting += 1
            self._stats.active += 1
        self._persist(response)
        return response

    def transition(self, request_id: str, status: RequestStatus, **fields: Any) -> AgentResponse:
        """Apply a status change plus optional output/error/timing fields.

        Transitions out of a terminal state are ignored and the stored
        snapshot is returned unchanged.
        """
        with self._lock:
            current = self._responses.get(request_id)
            if current is None:
                raise RequestNotFoundError(request_id)
            if status not in _ALLOWED_TRANSITIONS[current.status]:
                logger.warning(
                    "Ignoring transition of request %s from %s to %s",
                    request_id, current.status.value, status.value,
                )
                return current

            update = dict(fields, status=status)
            if status == RequestStatus.PROCESSING:
                update.setdefault("started_at", utcnow())
            if status.is_terminal:
                update.setdefault("completed_at", utcnow())
                if update.get("execution_time_ms") is None:
                    update["execution_time_ms"] = 0
            updated = current.model_copy(update=update)
            self._responses[request_id] = updated

            if current.status == RequestStatus.PENDING:
                self._stats.waiting -= 1
            if status.is_terminal:
                self._stats.active -= 1
                if status == RequestStatus.COMPLETED:
                    self._stats.completed += 1
                else:
                    self._stats.failed += 1
        self._persist(updated)
        return updated

    def get(self, request_id: str) -> AgentResponse | None:
        with self._lock:
            return self._responses.get(request_id)

    def list_responses(self) -> list[AgentResponse]:
        with self._lock:
            responses = list(self._responses.values())
        return sorted(responses, key=lambda r: r.created_at, reverse=True)

    def stats(self) -> QueueStats:
        with self._lock:
            return self._stats.model_copy()

    def evict_older_than(self, age: timedelta, now: datetime | None = None) -> int:
        """Remove terminal records created before ``now - age``. Returns the number removed."""
        cutoff = (now or utcnow()) - age
        with self._lock:
            expired = [
                rid for rid, r in self._responses.items()
                if r.status.is_terminal and r.created_at < cutoff
            ]
            for rid in expired:
                del self._responses[rid]
        for rid in expired:
            self._unpersist(rid)
        if expired:
            logger.info("Evicted %d finished requests older than %s", len(expired), age)
        return len(expired)

    # ── Persistence ───────────────────────────────────────────────────────

    def _persist(self, response: AgentResponse) -> None:
        if self._persist_dir is None:
            return
        path = self._persist_dir / f"{response.id}.json"
        try:
            path.write_text(response.model_dump_json(indent=2))
        except OSError as exc:
            logger.warning("Failed to persist request %s: %s", response.id, exc)

    def _unpersist(self, request_id: str) -> None:
        if self._persist_dir is None:
            return
        (self._persist_dir / f"{request_id}.json").unlink(missing_ok=True)

    def _load_persisted(self, directory: Path) -> None:
        """Load records from disk on startup."""
        for f in sorted(directory.iterdir()):
            if f.suffix != ".json":
                continue
            try:
                response = AgentResponse(**json.loads(f.read_text()))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable request record %s: %s", f.name, exc)
                continue
            # Anything still in flight died with the previous process.
            if not response.status.is_terminal:
                response = response.model_copy(update={
                    "status": RequestStatus.FAILED,
                    "error": "Gateway restarted while request was in flight",
                    "completed_at": utcnow(),
                    "execution_time_ms": response.execution_time_ms or 0,
                })
                f.write_text(response.model_dump_json(indent=2))
            self._responses[response.id] = response
            if response.status == RequestStatus.COMPLETED:
                self._stats.completed += 1
            else:
                self._stats.failed += 1
        if self._responses:
            logger.info("Loaded %d persisted requests", len(self._responses))
