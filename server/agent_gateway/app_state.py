"""Gateway application state: the services shared by all routes."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from .config import GatewayConfig
from .services.job_service import JobSubmissionService
from .services.process_runner import ProcessRunner
from .services.registry import RequestRegistry
from .services.session import SessionStore
from .services.stream_relay import StreamRelay

logger = logging.getLogger(__name__)


class GatewayState:
    """Holds service instances for one gateway process.

    Submitted jobs and live streams share one admission semaphore, so at most
    ``max_concurrent`` agent processes run at any time.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        registry: RequestRegistry | None = None,
        sessions: SessionStore | None = None,
        max_concurrent: int = 4,
        max_prompt_length: int = 10_000,
        retention: timedelta = timedelta(hours=1),
        cleanup_interval_s: float = 3600,
    ) -> None:
        self.runner = runner
        self.registry = registry or RequestRegistry()
        self.sessions = sessions or SessionStore()
        self.max_concurrent = max_concurrent
        self.admission = asyncio.Semaphore(max_concurrent)
        self.jobs = JobSubmissionService(
            runner,
            self.registry,
            self.sessions,
            admission=self.admission,
            max_prompt_length=max_prompt_length,
            retention=retention,
            cleanup_interval_s=cleanup_interval_s,
        )
        self.relay = StreamRelay(
            runner,
            self.sessions,
            admission=self.admission,
            max_prompt_length=max_prompt_length,
        )

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> GatewayState:
        logger.info(
            "Agent command: %s (prompt via %s, max %d concurrent)",
            " ".join(cfg.agent_command), cfg.prompt_mode, cfg.max_concurrent,
        )
        return cls(
            ProcessRunner.from_config(cfg),
            registry=RequestRegistry(persist_dir=cfg.persist_dir),
            sessions=SessionStore.from_config(cfg),
            max_concurrent=cfg.max_concurrent,
            max_prompt_length=cfg.max_prompt_length,
            retention=timedelta(seconds=cfg.retention_s),
            cleanup_interval_s=cfg.cleanup_interval_s,
        )

    async def startup(self) -> None:
        self.jobs.start_cleanup_loop()

    async def shutdown(self) -> None:
        await self.jobs.shutdown()
