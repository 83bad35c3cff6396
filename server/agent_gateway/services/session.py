"""Conversation sessions: rolling prompt/response history per session id."""

from __future__ import annotations

import asyncio
import logging

from ..config import GatewayConfig
from ..models.requests import HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"
DEFAULT_HISTORY_WINDOW = 6


class ConversationSession:
    """History of prior exchanges used to give the agent recent context.

    Only the last ``window`` entries are rendered into an augmented prompt.
    Stored history is unbounded unless ``max_entries`` is set.
    """

    def __init__(
        self,
        session_id: str,
        window: int = DEFAULT_HISTORY_WINDOW,
        max_entries: int = 0,
    ) -> None:
        self.session_id = session_id
        self.window = window
        self.max_entries = max_entries
        self._history: list[HistoryEntry] = []
        self._lock = asyncio.Lock()

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    def build_augmented_prompt(self, new_prompt: str) -> str:
        if not self._history or self.window <= 0:
            return new_prompt
        lines = ["Previous conversation:"]
        for entry in self._history[-self.window:]:
            speaker = "User" if entry.role == "user" else "Assistant"
            lines.append(f"{speaker}: {entry.content}")
        lines.append("")
        lines.append(f"Current request: {new_prompt}")
        return "\n".join(lines)

    async def record_exchange(self, user_prompt: str, assistant_output: str) -> None:
        """Append the user entry then the assistant entry as one unit."""
        async with self._lock:
            self._history.append(HistoryEntry(role="user", content=user_prompt))
            self._history.append(HistoryEntry(role="assistant", content=assistant_output))
            if self.max_entries and len(self._history) > self.max_entries:
                del self._history[: len(self._history) - self.max_entries]

    async def clear(self) -> None:
        async with self._lock:
            self._history.clear()


class SessionStore:
    """Creates sessions on first use and keeps them for the life of the process."""

    def __init__(self, window: int = DEFAULT_HISTORY_WINDOW, max_entries: int = 0) -> None:
        self.window = window
        self.max_entries = max_entries
        self._sessions: dict[str, ConversationSession] = {}

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> SessionStore:
        return cls(window=cfg.history_window, max_entries=cfg.history_max_entries)

    def get(self, session_id: str | None = None) -> ConversationSession:
        sid = session_id or DEFAULT_SESSION_ID
        session = self._sessions.get(sid)
        if session is None:
            session = ConversationSession(sid, window=self.window, max_entries=self.max_entries)
            self._sessions[sid] = session
            logger.info("Created conversation session '%s'", sid)
        return session

    def get_or_none(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    def list_ids(self) -> list[str]:
        return list(self._sessions.keys())

    async def clear(self, session_id: str) -> bool:
        """Drop a session's history. Returns False if the session never existed."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.clear()
        logger.info("Cleared conversation session '%s'", session_id)
        return True
