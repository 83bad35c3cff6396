"""Helpers for turning raw agent CLI output into history text."""

from __future__ import annotations

import re

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

EMPTY_OUTPUT_PLACEHOLDER = "Request completed successfully."


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and stray control characters."""
    return _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", text))


def clean_agent_output(raw: str | None) -> str:
    """Text recorded as the assistant turn of a conversation."""
    cleaned = strip_ansi(raw or "").replace("\r\n", "\n").strip()
    return cleaned or EMPTY_OUTPUT_PLACEHOLDER
