"""Domain exceptions raised by the gateway services."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for gateway errors."""


class PromptValidationError(GatewayError, ValueError):
    """The submitted prompt is empty or too long. No request is created."""


class RequestNotFoundError(GatewayError, KeyError):
    """No record exists for the given request id."""

    def __init__(self, request_id: str) -> None:
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"Request not found: {self.request_id}"
