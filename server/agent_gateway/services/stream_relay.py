"""Stream relay: forwards one agent execution's stdout to a sink as it arrives."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Protocol

from ..models.requests import RequestContext, RequestStatus
from .job_service import DEFAULT_MAX_PROMPT_LENGTH, validate_prompt
from .output import clean_agent_output
from .process_runner import ProcessRunner, RunOptions, RunResult
from .session import SessionStore

logger = logging.getLogger(__name__)


class StreamSink(Protocol):
    """Receives chunks, then exactly one of ``on_complete`` or ``on_error``."""

    async def on_chunk(self, text: str) -> None: ...

    async def on_complete(self) -> None: ...

    async def on_error(self, message: str) -> None: ...


class StreamRelay:
    """Runs a single streaming execution and forwards its output to a sink."""

    def __init__(
        self,
        runner: ProcessRunner,
        sessions: SessionStore,
        admission: asyncio.Semaphore | None = None,
        max_prompt_length: int = DEFAULT_MAX_PROMPT_LENGTH,
    ) -> None:
        self.runner = runner
        self.sessions = sessions
        self.admission = admission or asyncio.Semaphore(4)
        self.max_prompt_length = max_prompt_length

    async def stream(
        self,
        prompt: str,
        context: RequestContext | None,
        sink: StreamSink,
        session_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        """Execute ``prompt`` and relay its output.

        Raises PromptValidationError before anything is sent to the sink.
        Every chunk is delivered before the terminal call.
        """
        validate_prompt(prompt, self.max_prompt_length)
        session = self.sessions.get(session_id)
        context = context or RequestContext()

        async with self.admission:
            if cancel_event is not None and cancel_event.is_set():
                # Cancelled while waiting for a slot; never spawn the agent.
                result = RunResult(status=RequestStatus.FAILED, error="Request cancelled")
            else:
                logger.info("Streaming request started: %s", prompt[:80])
                result = await self.runner.execute_streaming(
                    session.build_augmented_prompt(prompt),
                    RunOptions(
                        working_directory=context.working_directory,
                        environment=context.environment,
                        timeout_ms=context.timeout_ms,
                        cancel_event=cancel_event,
                    ),
                    sink.on_chunk,
                )

        if result.succeeded:
            try:
                await session.record_exchange(prompt, clean_agent_output(result.output))
            except Exception:
                logger.exception("Failed to record exchange in session '%s'", session.session_id)
            await _deliver_terminal(sink.on_complete())
        else:
            await _deliver_terminal(sink.on_error(result.error or "Agent execution failed"))
        logger.info(
            "Streaming request finished with status %s in %d ms",
            result.status.value, result.execution_time_ms,
        )
        return result


async def _deliver_terminal(call) -> None:
    try:
        await call
    except Exception as exc:
        logger.warning("Stream sink rejected terminal event: %s", exc)


_DONE = object()


class QueueSink:
    """Sink that buffers events in an asyncio.Queue for an HTTP response to consume.

    Events are dicts: ``{"type": "chunk", "content": ...}``,
    ``{"type": "status", "status": "completed", ...}`` or
    ``{"type": "error", "error": ...}``. Iteration stops after the terminal event.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    async def on_chunk(self, text: str) -> None:
        await self._queue.put({"type": "chunk", "content": text})

    async def on_complete(self) -> None:
        await self._queue.put({"type": "status", "status": "completed", "message": "Response completed successfully"})
        await self._queue.put(_DONE)

    async def on_error(self, message: str) -> None:
        await self._queue.put({"type": "error", "error": message})
        await self._queue.put(_DONE)

    async def close(self) -> None:
        """End iteration without a terminal event (used when the relay itself failed)."""
        await self._queue.put(_DONE)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _DONE:
                return
            yield item
