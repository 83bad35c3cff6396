"""Job submission service: accepts prompts and runs them in the background."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

from ..errors import PromptValidationError
from ..models.requests import AgentRequest, AgentResponse, QueueStats, RequestContext, RequestStatus
from .output import clean_agent_output
from .process_runner import ProcessRunner, RunOptions
from .registry import RequestRegistry
from .session import SessionStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[AgentResponse], Awaitable[None]]

DEFAULT_RETENTION = timedelta(hours=1)
DEFAULT_MAX_PROMPT_LENGTH = 10_000
DEFAULT_LISTENER_TIMEOUT_S = 5.0


def validate_prompt(prompt: str, max_length: int = DEFAULT_MAX_PROMPT_LENGTH) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise PromptValidationError("Prompt is required")
    if len(prompt) > max_length:
        raise PromptValidationError(f"Prompt exceeds {max_length} characters")


class JobSubmissionService:
    """Runs each submitted prompt through the agent CLI without blocking the caller.

    Every scheduled execution is an ``asyncio.Task`` kept in ``_tasks`` until it
    finishes. Whatever happens inside the task, its record ends in a terminal
    state. Status listeners are fed from a queue by a separate dispatcher task,
    so a slow listener never holds up ``submit`` or an admission slot.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        registry: RequestRegistry,
        sessions: SessionStore,
        admission: asyncio.Semaphore | None = None,
        max_concurrent: int = 4,
        max_prompt_length: int = DEFAULT_MAX_PROMPT_LENGTH,
        retention: timedelta = DEFAULT_RETENTION,
        cleanup_interval_s: float = 3600,
        listener_timeout_s: float = DEFAULT_LISTENER_TIMEOUT_S,
    ) -> None:
        self.runner = runner
        self.registry = registry
        self.sessions = sessions
        self.admission = admission or asyncio.Semaphore(max_concurrent)
        self.max_prompt_length = max_prompt_length
        self.retention = retention
        self.cleanup_interval_s = cleanup_interval_s
        self.listener_timeout_s = listener_timeout_s
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._listeners: list[StatusListener] = []
        self._cleanup_task: asyncio.Task | None = None
        self._notifications: asyncio.Queue[AgentResponse] = asyncio.Queue()
        self._dispatcher_task: asyncio.Task | None = None

    async def submit(
        self,
        prompt: str,
        context: RequestContext | None = None,
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> AgentResponse:
        """Register a new request and schedule it. Returns the pending snapshot immediately."""
        validate_prompt(prompt, self.max_prompt_length)
        request = AgentRequest(
            id=str(uuid.uuid4()),
            prompt=prompt,
            context=context,
            metadata=metadata or {},
            session_id=session_id,
        )
        response = self.registry.create(request)
        self._cancel_events[request.id] = asyncio.Event()
        task = asyncio.create_task(self._execute(request), name=f"agent-request-{request.id}")
        self._tasks[request.id] = task
        task.add_done_callback(lambda _t, rid=request.id: self._forget(rid))

        logger.info("Request %s submitted: %s", request.id, prompt[:80])
        self._notify(response)
        return response

    def get_status(self, request_id: str) -> AgentResponse | None:
        return self.registry.get(request_id)

    def get_stats(self) -> QueueStats:
        return self.registry.stats()

    def list_requests(self) -> list[AgentResponse]:
        return self.registry.list_responses()

    async def cancel(self, request_id: str) -> bool:
        """Stop a pending or processing request. Returns False if unknown or already finished.

        A pending request is failed right away; a processing one has its agent
        process terminated and is failed once the process is gone.
        """
        response = self.registry.get(request_id)
        event = self._cancel_events.get(request_id)
        if response is None or event is None or response.status.is_terminal:
            return False
        event.set()
        logger.info("Cancellation requested for request %s", request_id)
        if response.status == RequestStatus.PENDING:
            self._terminalize(request_id, "Request cancelled")
            task = self._tasks.get(request_id)
            if task is not None:
                task.cancel()
        return True

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def cleanup(self, retention: timedelta | None = None) -> int:
        return self.registry.evict_older_than(retention or self.retention)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Background cleanup ───────────────────────────────────────────────

    def start_cleanup_loop(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Cleanup loop started (every %ss)", self.cleanup_interval_s)

    def stop_cleanup_loop(self) -> None:
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            logger.info("Cleanup loop stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval_s)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Cleanup error: %s", exc)

    async def shutdown(self) -> None:
        """Cancel in-flight executions, wait until their records are terminal, then flush status listeners."""
        self.stop_cleanup_loop()
        pending = dict(self._tasks)
        for task in pending.values():
            task.cancel()
        if pending:
            await asyncio.gather(*pending.values(), return_exceptions=True)
            # Tasks cancelled before their first step never reach their own handlers.
            for request_id in pending:
                self._terminalize(request_id, "Gateway shutting down")
            logger.info("Cancelled %d in-flight requests on shutdown", len(pending))
        await self._stop_dispatcher()

    # ── Internal ──────────────────────────────────────────────────────────

    async def _execute(self, request: AgentRequest) -> None:
        cancel_event = self._cancel_events[request.id]
        try:
            await self._run(request, cancel_event)
        except asyncio.CancelledError:
            self._terminalize(request.id, "Request cancelled")
            raise
        except Exception as exc:
            logger.exception("Request %s failed outside the agent process", request.id)
            self._terminalize(request.id, f"Internal error: {exc}")
        finally:
            # A record must never stay pending or processing once its task ends.
            current = self.registry.get(request.id)
            if current is not None and not current.status.is_terminal:
                self.registry.transition(
                    request.id, RequestStatus.FAILED, error="Request ended without a result"
                )

    async def _run(self, request: AgentRequest, cancel_event: asyncio.Event) -> None:
        async with self.admission:
            if cancel_event.is_set():
                self._terminalize(request.id, "Request cancelled")
                return

            response = self.registry.transition(request.id, RequestStatus.PROCESSING)
            self._notify(response)
            logger.info("Executing request %s", request.id)

            session = self.sessions.get(request.session_id)
            context = request.context or RequestContext()
            result = await self.runner.execute(
                session.build_augmented_prompt(request.prompt),
                RunOptions(
                    working_directory=context.working_directory,
                    environment=context.environment,
                    timeout_ms=context.timeout_ms,
                    cancel_event=cancel_event,
                ),
            )

        if result.succeeded:
            await session.record_exchange(request.prompt, clean_agent_output(result.output))
            response = self.registry.transition(
                request.id,
                RequestStatus.COMPLETED,
                output=result.output,
                execution_time_ms=result.execution_time_ms,
            )
        else:
            response = self.registry.transition(
                request.id,
                RequestStatus.FAILED,
                output=result.output,
                error=result.error,
                execution_time_ms=result.execution_time_ms,
            )
        logger.info(
            "Request %s finished with status %s in %d ms",
            request.id, response.status.value, result.execution_time_ms,
        )
        self._notify(response)

    def _terminalize(self, request_id: str, error: str) -> None:
        current = self.registry.get(request_id)
        if current is None or current.status.is_terminal:
            return
        response = self.registry.transition(request_id, RequestStatus.FAILED, error=error)
        logger.warning("Request %s failed: %s", request_id, error)
        self._notify(response)

    def _notify(self, response: AgentResponse) -> None:
        """Queue a status change for the listeners without waiting on them."""
        if not self._listeners:
            return
        self._notifications.put_nowait(response)
        if self._dispatcher_task is None or self._dispatcher_task.done():
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="agent-status-dispatcher")

    async def _dispatcher(self) -> None:
        """Deliver queued status changes to every listener, in submission order."""
        while True:
            response = await self._notifications.get()
            try:
                for listener in list(self._listeners):
                    try:
                        await asyncio.wait_for(listener(response), self.listener_timeout_s)
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Status listener timed out after %ss for request %s",
                            self.listener_timeout_s, response.request_id,
                        )
                    except Exception as exc:
                        logger.warning("Status listener failed for request %s: %s", response.request_id, exc)
            finally:
                self._notifications.task_done()

    async def _stop_dispatcher(self) -> None:
        if self._dispatcher_task is None:
            return
        if not self._dispatcher_task.done():
            try:
                await asyncio.wait_for(self._notifications.join(), self.listener_timeout_s)
            except asyncio.TimeoutError:
                logger.warning("Dropping %d undelivered status notifications", self._notifications.qsize())
            self._dispatcher_task.cancel()
        await asyncio.gather(self._dispatcher_task, return_exceptions=True)
        self._dispatcher_task = None

    def _forget(self, request_id: str) -> None:
        self._tasks.pop(request_id, None)
        self._cancel_events.pop(request_id, None)
