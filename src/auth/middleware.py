"""Authentication middleware helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from src.auth.jwt import AuthContext, decode_access_token


AUTH_CONTEXT_KEY = "auth_context"
SESSION_COOKIE_NAME = "openpolicy-access-token"


def _extract_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if authorization:
        parts = authorization.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip() or None
        return None

    cookie_token = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie_token:
        return cookie_token.strip() or None
    return None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    token = _extract_bearer_token(request)
    if not token:
        return None

    try:
        return decode_access_token(token)
    except HTTPException:
        return None
