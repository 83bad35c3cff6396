"""Shared fixtures: fake agent CLIs built from small Python scripts."""

from __future__ import annotations

import asyncio
import sys
import textwrap
import time

import pytest

from agent_gateway.services.process_runner import ProcessRunner


def agent_command(script: str) -> list[str]:
    """Command line that runs ``script`` as the agent CLI."""
    return [sys.executable, "-c", textwrap.dedent(script)]


@pytest.fixture
def make_runner():
    """Factory for a ProcessRunner whose agent is the given Python script."""

    def factory(script: str, **kwargs) -> ProcessRunner:
        kwargs.setdefault("auto_approve_flag", "")
        kwargs.setdefault("kill_grace_s", 1.0)
        return ProcessRunner(agent_command(script), **kwargs)

    return factory


@pytest.fixture
def wait_terminal():
    """Poll a service until the request reaches a terminal state."""

    async def waiter(service, request_id: str, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while True:
            response = service.get_status(request_id)
            if response is not None and response.status.is_terminal:
                return response
            if time.monotonic() > deadline:
                raise AssertionError(f"Request {request_id} still {response.status.value if response else 'missing'}")
            await asyncio.sleep(0.02)

    return waiter


# Agent scripts used across test modules

ECHO_AGENT = """
import sys
sys.stdout.write(sys.stdin.read())
"""

DONE_AGENT = """
import sys
sys.stdin.read()
sys.stdout.write("done")
"""

BOOM_AGENT = """
import sys
sys.stdin.read()
sys.stderr.write("boom")
sys.exit(1)
"""

SLOW_AGENT = """
import sys, time
sys.stdin.read()
time.sleep(30)
sys.stdout.write("too late")
"""
