"""Process runner: executes one agent CLI invocation per prompt.

Each call spawns exactly one child process and always produces exactly one
RunResult. Spawn errors, non-zero exits, timeouts and cancellations are folded
into ``RunResult.status``/``RunResult.error`` instead of being raised.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from ..config import GatewayConfig
from ..models.requests import RequestStatus

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

_READ_SIZE = 4096
_USE_PROCESS_GROUP = os.name == "posix"


@dataclass(frozen=True)
class RunOptions:
    working_directory: str | None = None
    environment: dict[str, str] | None = None
    timeout_ms: int | None = None
    cancel_event: asyncio.Event | None = None


@dataclass(frozen=True)
class RunResult:
    status: RequestStatus
    output: str | None = None
    error: str | None = None
    exit_code: int | None = None
    execution_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == RequestStatus.COMPLETED


class ExecutionState(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class _Execution:
    """Terminal-state guard for one child process.

    The timeout timer, the cancel watcher and process exit all race to call
    ``finish``; only the first call moves the state out of RUNNING.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self.state = ExecutionState.RUNNING
        self.timeout_handle: asyncio.TimerHandle | None = None
        self.kill_handle: asyncio.TimerHandle | None = None

    def finish(self, state: ExecutionState) -> bool:
        if self.state is not ExecutionState.RUNNING:
            return False
        self.state = state
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None
        return True

    def release(self) -> None:
        for handle in (self.timeout_handle, self.kill_handle):
            if handle is not None:
                handle.cancel()
        self.timeout_handle = None
        self.kill_handle = None


class ProcessRunner:
    """Spawns the agent CLI for a single prompt and collects its output."""

    def __init__(
        self,
        command: list[str],
        *,
        prompt_mode: str = "stdin",
        auto_approve_flag: str = "--yolo",
        default_timeout_ms: int = 300_000,
        kill_grace_s: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        if prompt_mode not in ("stdin", "argument"):
            raise ValueError(f"Unknown prompt mode: {prompt_mode}")
        self.command = list(command)
        self.prompt_mode = prompt_mode
        self.auto_approve_flag = auto_approve_flag
        self.default_timeout_ms = default_timeout_ms
        self.kill_grace_s = kill_grace_s

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> ProcessRunner:
        return cls(
            cfg.agent_command,
            prompt_mode=cfg.prompt_mode,
            auto_approve_flag=cfg.auto_approve_flag,
            default_timeout_ms=cfg.timeout_ms,
            kill_grace_s=cfg.kill_grace_s,
        )

    async def execute(self, prompt: str, options: RunOptions | None = None) -> RunResult:
        """Run the agent to completion and return the collected result."""
        return await self._run(prompt, options or RunOptions(), None)

    async def execute_streaming(
        self, prompt: str, options: RunOptions | None, on_chunk: ChunkCallback
    ) -> RunResult:
        """Run the agent, awaiting ``on_chunk`` for each stdout fragment in arrival order.

        Applies the same timeout and cancellation as ``execute``. The returned
        result still carries the full stdout in ``output``.
        """
        return await self._run(prompt, options or RunOptions(), on_chunk)

    def build_argv(self, prompt: str, working_directory: str | None = None) -> list[str]:
        argv = list(self.command)
        if self.prompt_mode == "argument":
            argv += ["--prompt", prompt]
            if working_directory:
                argv += ["--include-directories", working_directory]
        if self.auto_approve_flag:
            argv.append(self.auto_approve_flag)
        return argv

    # ── Internal ──────────────────────────────────────────────────────────

    async def _run(self, prompt: str, options: RunOptions, on_chunk: ChunkCallback | None) -> RunResult:
        started = time.monotonic()
        timeout_ms = options.timeout_ms or self.default_timeout_ms
        argv = self.build_argv(prompt, options.working_directory)
        env = {**os.environ, **(options.environment or {})}
        cwd = options.working_directory or os.getcwd()

        logger.info("Starting agent CLI in %s: %s", cwd, prompt[:80])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if self.prompt_mode == "stdin" else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=_USE_PROCESS_GROUP,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to start agent CLI %s: %s", argv[0], exc)
            return RunResult(
                status=RequestStatus.FAILED,
                error=str(exc) or exc.__class__.__name__,
                execution_time_ms=_elapsed_ms(started),
            )

        execution = _Execution(process)
        loop = asyncio.get_running_loop()
        execution.timeout_handle = loop.call_later(
            timeout_ms / 1000, self._stop, execution, ExecutionState.TIMED_OUT
        )
        cancel_watch: asyncio.Task | None = None
        if options.cancel_event is not None:
            cancel_watch = asyncio.create_task(self._watch_cancel(options.cancel_event, execution))

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        try:
            await asyncio.gather(
                self._feed_stdin(process, prompt),
                self._drain(process.stdout, stdout_parts, on_chunk),
                self._drain(process.stderr, stderr_parts, None),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            # The awaiting task went away; do not leave the agent running.
            if execution.finish(ExecutionState.CANCELLED):
                self._signal(process, force=True)
            raise
        except Exception as exc:
            logger.exception("Lost contact with agent CLI (pid %d)", process.pid)
            execution.finish(ExecutionState.EXITED)
            self._signal(process, force=True)
            return RunResult(
                status=RequestStatus.FAILED,
                error=f"Agent I/O failed: {exc}",
                execution_time_ms=_elapsed_ms(started),
            )
        finally:
            if cancel_watch is not None:
                cancel_watch.cancel()
            execution.release()

        elapsed = _elapsed_ms(started)
        output = "".join(stdout_parts)
        stderr = "".join(stderr_parts)

        if execution.finish(ExecutionState.EXITED):
            if exit_code == 0:
                logger.info("Agent CLI completed in %d ms", elapsed)
                return RunResult(
                    status=RequestStatus.COMPLETED,
                    output=output,
                    exit_code=0,
                    execution_time_ms=elapsed,
                )
            logger.error("Agent CLI failed with code %s: %s", exit_code, stderr.strip()[:200])
            return RunResult(
                status=RequestStatus.FAILED,
                output=output or None,
                error=stderr.strip() or f"Process exited with code {exit_code}",
                exit_code=exit_code,
                execution_time_ms=elapsed,
            )

        if execution.state is ExecutionState.TIMED_OUT:
            error = f"Process timed out after {timeout_ms} ms"
        else:
            error = "Request cancelled"
        return RunResult(
            status=RequestStatus.FAILED,
            output=output or None,
            error=error,
            exit_code=exit_code,
            execution_time_ms=elapsed,
        )

    def _stop(self, execution: _Execution, reason: ExecutionState) -> None:
        """Terminate the child if it is still running; escalate to a kill after the grace period."""
        if not execution.finish(reason):
            return
        logger.warning("Stopping agent CLI (pid %d): %s", execution.process.pid, reason.value)
        self._signal(execution.process, force=False)
        loop = asyncio.get_running_loop()
        execution.kill_handle = loop.call_later(self.kill_grace_s, self._signal, execution.process, True)

    async def _watch_cancel(self, event: asyncio.Event, execution: _Execution) -> None:
        await event.wait()
        self._stop(execution, ExecutionState.CANCELLED)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, force: bool) -> None:
        try:
            if _USE_PROCESS_GROUP:
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif process.returncode is None:
                if force:
                    process.kill()
                else:
                    process.terminate()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent CLI closed stdin before reading the whole prompt")
        finally:
            process.stdin.close()

    @staticmethod
    async def _drain(
        stream: asyncio.StreamReader | None, parts: list[str], on_chunk: ChunkCallback | None
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        deliver = on_chunk
        while True:
            data = await stream.read(_READ_SIZE)
            final = not data
            text = decoder.decode(data, final=final)
            if text:
                parts.append(text)
                if deliver is not None:
                    try:
                        await deliver(text)
                    except Exception as exc:
                        # Keep draining so the process can still exit.
                        logger.warning("Chunk delivery failed, dropping further chunks: %s", exc)
                        deliver = None
            if final:
                return


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))
