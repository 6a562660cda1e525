"""Security-related helpers (optional shared-token auth).

Control endpoints can be protected with a bearer token and the Jira webhook with a
`?token=` query parameter. Both are disabled when the corresponding setting is empty.
"""

from __future__ import annotations

import secrets

from fastapi import HTTPException, Request

from jiracdc.config import settings


def _parse_bearer_token(header_value: str) -> str | None:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header_value:
        return None

    scheme, _, param = header_value.partition(" ")
    if scheme.lower() != "bearer" or not param.strip():
        return None

    return param.strip()


def token_matches(provided: str | None, expected: str) -> bool:
    if provided is None:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_api_token(request: Request) -> None:
    """FastAPI dependency guarding control endpoints."""
    if not settings.api_token:
        return
    token = _parse_bearer_token(request.headers.get("Authorization", ""))
    if not token_matches(token, settings.api_token):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def webhook_token_valid(provided: str | None) -> bool:
    if not settings.webhook_token:
        return True
    return token_matches(provided, settings.webhook_token)
