"""API key authentication for the Agent Gateway."""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

_bearer = HTTPBearer(auto_error=False)


def key_matches(candidate: str | None, expected: str) -> bool:
    return candidate is not None and secrets.compare_digest(candidate.encode(), expected.encode())


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """Validate the caller's key against the app's configured API key.

    Accepted from ``Authorization: Bearer <key>``, ``X-API-Key: <key>``, or a
    ``?token=<key>`` query param.
    """
    expected = request.app.state.api_key

    if credentials and key_matches(credentials.credentials, expected):
        return
    if key_matches(request.headers.get("x-api-key"), expected):
        return
    if key_matches(request.query_params.get("token"), expected):
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
