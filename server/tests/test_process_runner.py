"""Tests for ProcessRunner: result classification, timeouts, cancellation, streaming."""

from __future__ import annotations

import asyncio
import json
import os
import time

import pytest

from agent_gateway.models.requests import RequestStatus
from agent_gateway.services.process_runner import (
    ExecutionState,
    ProcessRunner,
    RunOptions,
    _Execution,
)
from conftest import BOOM_AGENT, DONE_AGENT, ECHO_AGENT, SLOW_AGENT

posix_only = pytest.mark.skipif(os.name != "posix", reason="relies on POSIX signals")


class TestBuildArgv:
    def test_stdin_mode_appends_auto_approve_flag(self):
        runner = ProcessRunner(["qwen"], auto_approve_flag="--yolo")
        assert runner.build_argv("hello") == ["qwen", "--yolo"]

    def test_argument_mode_passes_prompt_and_directory(self):
        runner = ProcessRunner(["node", "cli.js"], prompt_mode="argument")
        argv = runner.build_argv("hello", "/work")
        assert argv == ["node", "cli.js", "--prompt", "hello", "--include-directories", "/work", "--yolo"]

    def test_empty_flag_is_omitted(self):
        runner = ProcessRunner(["qwen"], auto_approve_flag="")
        assert runner.build_argv("hello") == ["qwen"]

    def test_rejects_empty_command(self):
        with pytest.raises(ValueError):
            ProcessRunner([])

    def test_rejects_unknown_prompt_mode(self):
        with pytest.raises(ValueError):
            ProcessRunner(["qwen"], prompt_mode="pipe")


class TestExecutionGuard:
    def test_first_terminal_event_wins(self):
        execution = _Execution(process=None)
        assert execution.finish(ExecutionState.TIMED_OUT)
        assert not execution.finish(ExecutionState.EXITED)
        assert not execution.finish(ExecutionState.CANCELLED)
        assert execution.state is ExecutionState.TIMED_OUT

    def test_finish_cancels_timeout_timer(self):
        class Handle:
            cancelled = False

            def cancel(self):
                self.cancelled = True

        execution = _Execution(process=None)
        handle = Handle()
        execution.timeout_handle = handle
        execution.finish(ExecutionState.EXITED)
        assert handle.cancelled
        assert execution.timeout_handle is None


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_returns_stdout(self, make_runner):
        result = await make_runner(DONE_AGENT).execute("do it")
        assert result.status == RequestStatus.COMPLETED
        assert result.output == "done"
        assert result.error is None
        assert result.exit_code == 0
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_prompt_is_written_to_stdin(self, make_runner):
        result = await make_runner(ECHO_AGENT).execute("write a haiku about pipes")
        assert result.output == "write a haiku about pipes"

    @pytest.mark.asyncio
    async def test_non_zero_exit_uses_stderr(self, make_runner):
        result = await make_runner(BOOM_AGENT).execute("explode")
        assert result.status == RequestStatus.FAILED
        assert result.error == "boom"
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_stderr_names_exit_code(self, make_runner):
        runner = make_runner("import sys; sys.stdin.read(); sys.exit(3)")
        result = await runner.execute("x")
        assert result.status == RequestStatus.FAILED
        assert result.error == "Process exited with code 3"

    @pytest.mark.asyncio
    async def test_non_zero_exit_keeps_partial_stdout(self, make_runner):
        runner = make_runner(
            """
            import sys
            sys.stdin.read()
            sys.stdout.write("half")
            sys.exit(2)
            """
        )
        result = await runner.execute("x")
        assert result.status == RequestStatus.FAILED
        assert result.output == "half"

    @pytest.mark.asyncio
    async def test_spawn_failure_is_folded_into_result(self):
        runner = ProcessRunner(["/nonexistent/agent-cli-binary"], auto_approve_flag="")
        result = await runner.execute("x")
        assert result.status == RequestStatus.FAILED
        assert result.error
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_missing_working_directory_is_a_spawn_failure(self, make_runner, tmp_path):
        result = await make_runner(DONE_AGENT).execute("x", RunOptions(working_directory=str(tmp_path / "nope")))
        assert result.status == RequestStatus.FAILED
        assert result.error

    @pytest.mark.asyncio
    async def test_working_directory_and_environment_overlay(self, make_runner, tmp_path):
        runner = make_runner(
            """
            import json, os, sys
            sys.stdin.read()
            print(json.dumps({
                "cwd": os.getcwd(),
                "var": os.environ.get("AGENT_TEST_VAR"),
                "has_path": "PATH" in os.environ,
            }))
            """
        )
        result = await runner.execute(
            "x",
            RunOptions(working_directory=str(tmp_path), environment={"AGENT_TEST_VAR": "42"}),
        )
        data = json.loads(result.output)
        assert os.path.samefile(data["cwd"], tmp_path)
        assert data["var"] == "42"
        assert data["has_path"] is True

    @pytest.mark.asyncio
    async def test_argument_mode_passes_prompt_on_command_line(self, make_runner, tmp_path):
        runner = make_runner(
            "import json, sys; print(json.dumps(sys.argv[1:]))",
            prompt_mode="argument",
            auto_approve_flag="--yolo",
        )
        result = await runner.execute("hi there", RunOptions(working_directory=str(tmp_path)))
        assert json.loads(result.output) == [
            "--prompt", "hi there", "--include-directories", str(tmp_path), "--yolo",
        ]

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_across_reads(self, make_runner):
        runner = make_runner(
            """
            import sys, time
            sys.stdin.read()
            for b in "héllo wörld ✓".encode("utf-8"):
                sys.stdout.buffer.write(bytes([b]))
                sys.stdout.buffer.flush()
                time.sleep(0.002)
            """
        )
        result = await runner.execute("x")
        assert result.output == "héllo wörld ✓"

    @pytest.mark.asyncio
    async def test_large_output_is_drained(self, make_runner):
        runner = make_runner("import sys; sys.stdin.read(); sys.stdout.write('x' * 2_000_000)")
        result = await runner.execute("x")
        assert result.status == RequestStatus.COMPLETED
        assert len(result.output) == 2_000_000


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_fails_with_message(self, make_runner):
        started = time.monotonic()
        result = await make_runner(SLOW_AGENT).execute("x", RunOptions(timeout_ms=300))
        elapsed = time.monotonic() - started
        assert result.status == RequestStatus.FAILED
        assert result.error == "Process timed out after 300 ms"
        assert "timed out" in result.error
        assert elapsed < 5

    @pytest.mark.asyncio
    async def test_default_timeout_comes_from_runner(self, make_runner):
        result = await make_runner(SLOW_AGENT, default_timeout_ms=250).execute("x")
        assert result.error == "Process timed out after 250 ms"

    @posix_only
    @pytest.mark.asyncio
    async def test_process_ignoring_sigterm_is_killed_after_grace(self, make_runner):
        runner = make_runner(
            """
            import signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            sys.stdin.read()
            time.sleep(30)
            """,
            kill_grace_s=0.2,
        )
        started = time.monotonic()
        result = await runner.execute("x", RunOptions(timeout_ms=300))
        assert result.status == RequestStatus.FAILED
        assert "timed out" in result.error
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_fast_exit_is_not_reported_as_timeout(self, make_runner):
        result = await make_runner(DONE_AGENT).execute("x", RunOptions(timeout_ms=5000))
        assert result.status == RequestStatus.COMPLETED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_stops_the_process(self, make_runner):
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.3, event.set)
        started = time.monotonic()
        result = await make_runner(SLOW_AGENT).execute("x", RunOptions(cancel_event=event))
        assert result.status == RequestStatus.FAILED
        assert result.error == "Request cancelled"
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_cancelling_the_caller_task_propagates(self, make_runner):
        task = asyncio.create_task(make_runner(SLOW_AGENT).execute("x"))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_arrive_in_order_before_result(self, make_runner):
        runner = make_runner(
            """
            import sys, time
            sys.stdin.read()
            for part in ("A", "B", "C"):
                sys.stdout.write(part)
                sys.stdout.flush()
                time.sleep(0.1)
            """
        )
        chunks: list[str] = []

        async def on_chunk(text: str) -> None:
            chunks.append(text)

        result = await runner.execute_streaming("x", None, on_chunk)
        assert "".join(chunks) == "ABC"
        assert result.status == RequestStatus.COMPLETED
        assert result.output == "ABC"

    @pytest.mark.asyncio
    async def test_failing_chunk_callback_does_not_break_execution(self, make_runner):
        calls = 0

        async def on_chunk(text: str) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("client went away")

        result = await make_runner(DONE_AGENT).execute_streaming("x", None, on_chunk)
        assert result.status == RequestStatus.COMPLETED
        assert result.output == "done"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_streaming_applies_timeout(self, make_runner):
        async def on_chunk(text: str) -> None:
            pass

        result = await make_runner(SLOW_AGENT).execute_streaming("x", RunOptions(timeout_ms=300), on_chunk)
        assert result.status == RequestStatus.FAILED
        assert "timed out" in result.error
