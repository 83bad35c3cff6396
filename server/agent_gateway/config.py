"""Environment-based configuration for the Agent Gateway."""

from __future__ import annotations

import logging
import os
import secrets
import shlex
from pathlib import Path

logger = logging.getLogger(__name__)

PROMPT_MODES = ("stdin", "argument")


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


class GatewayConfig:
    """Gateway configuration loaded from environment variables."""

    def __init__(self) -> None:
        self.host = os.environ.get("AGENT_GATEWAY_HOST", "0.0.0.0")
        self.port = _int_env("AGENT_GATEWAY_PORT", 3000, minimum=1)

        # Agent CLI invocation
        self.agent_command: list[str] = shlex.split(os.environ.get("AGENT_GATEWAY_AGENT_COMMAND", "qwen"))
        if not self.agent_command:
            raise ValueError("AGENT_GATEWAY_AGENT_COMMAND must not be empty")
        self.auto_approve_flag = os.environ.get("AGENT_GATEWAY_AUTO_APPROVE_FLAG", "--yolo").strip()
        self.prompt_mode = os.environ.get("AGENT_GATEWAY_PROMPT_MODE", "stdin").strip().lower()
        if self.prompt_mode not in PROMPT_MODES:
            raise ValueError(f"AGENT_GATEWAY_PROMPT_MODE must be one of {PROMPT_MODES}, got {self.prompt_mode!r}")

        # Execution limits
        self.timeout_ms = _int_env("AGENT_GATEWAY_TIMEOUT_MS", 300_000, minimum=1)
        self.kill_grace_s = _int_env("AGENT_GATEWAY_KILL_GRACE_S", 5)
        self.max_concurrent = _int_env("AGENT_GATEWAY_MAX_CONCURRENT", 4, minimum=1)
        self.max_prompt_length = _int_env("AGENT_GATEWAY_MAX_PROMPT_LENGTH", 10_000, minimum=1)

        # Retention of finished records
        self.retention_s = _int_env("AGENT_GATEWAY_RETENTION_S", 3600, minimum=1)
        self.cleanup_interval_s = _int_env("AGENT_GATEWAY_CLEANUP_INTERVAL_S", 3600, minimum=1)

        # Conversation history
        self.history_window = _int_env("AGENT_GATEWAY_HISTORY_WINDOW", 6)
        self.history_max_entries = _int_env("AGENT_GATEWAY_HISTORY_MAX_ENTRIES", 0)

        persist_dir = os.environ.get("AGENT_GATEWAY_PERSIST_DIR", "").strip()
        self.persist_dir: Path | None = Path(persist_dir) if persist_dir else None

        # Logging
        self.log_level = os.environ.get("AGENT_GATEWAY_LOG_LEVEL", "INFO").upper()
        log_file = os.environ.get("AGENT_GATEWAY_LOG_FILE", "").strip()
        self.log_file: Path | None = Path(log_file) if log_file else None

        # API key auth
        self.api_key = os.environ.get("AGENT_GATEWAY_API_KEY") or self._generate_api_key()

        # CORS origins (comma-separated)
        origins = os.environ.get("AGENT_GATEWAY_CORS_ORIGINS", "")
        self.cors_origins: list[str] = [o.strip() for o in origins.split(",") if o.strip()] if origins else ["*"]

    def _generate_api_key(self) -> str:
        """Generate a per-process API key when none is configured."""
        key = secrets.token_urlsafe(32)
        logger.warning("AGENT_GATEWAY_API_KEY not set; generated a key for this process")
        return key


# Singleton
config = GatewayConfig()
