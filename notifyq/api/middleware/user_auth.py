"""
Bearer-token authentication for the NotifyQ API.

The mobile client sends a Google OAuth access token; it is verified against
Google's tokeninfo endpoint and the caller's identity (Google subject id) is
cached for a few minutes so every request doesn't round-trip to Google.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import httpx
from cachetools import TTLCache
from fastapi import HTTPException, Request, status

from notifyq.infrastructure.settings import is_production
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

logger = get_logger(__name__)

GOOGLE_TOKEN_INFO_URL = "https://oauth2.googleapis.com/tokeninfo"

_CACHE_MAX_SIZE = 1000
_CACHE_TTL_SECONDS = 600  # shorter than Google's 1h token lifetime so revocations take effect


@dataclass
class AuthenticatedUser:
    id: str
    email: str = ""

    def __str__(self) -> str:
        return f"User({self.id})"


_token_cache: TTLCache[str, AuthenticatedUser] = TTLCache(maxsize=_CACHE_MAX_SIZE, ttl=_CACHE_TTL_SECONDS)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _check_audience(token_info: dict) -> None:
    expected_client_id = os.getenv("GOOGLE_OAUTH_CLIENT_ID")
    if not expected_client_id:
        if is_production():
            logger.error("GOOGLE_OAUTH_CLIENT_ID not configured in production!")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: OAuth client ID not set",
            )
        logger.warning("GOOGLE_OAUTH_CLIENT_ID not set - skipping audience validation (dev mode only)")
        return

    # Exact match only; substring matching would accept other apps' tokens
    if token_info.get("aud", "") != expected_client_id:
        logger.warning("Token audience mismatch: got=%s", token_info.get("aud"))
        raise _unauthorized("Token not issued for this application")


async def verify_google_token(token: str) -> AuthenticatedUser:
    """
    Verify a Google OAuth access token.

    Raises:
        HTTPException: 401 for invalid/expired tokens, 503 if Google is unreachable
    """
    if token in _token_cache:
        return _token_cache[token]

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(GOOGLE_TOKEN_INFO_URL, params={"access_token": token}, timeout=10.0)
        except httpx.TimeoutException:
            logger.warning("Token validation timed out")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service unavailable",
            ) from None
        except httpx.RequestError as e:
            logger.error("Token validation request failed: %s", e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service unavailable",
            ) from e

    if response.status_code != 200:
        counter("api.auth.invalid_token")
        logger.warning("Invalid token (status %d)", response.status_code)
        raise _unauthorized("Invalid or expired token")

    token_info = response.json()
    _check_audience(token_info)

    user_id = token_info.get("sub") or token_info.get("user_id")
    if not user_id:
        raise _unauthorized("Token has no subject")

    user = AuthenticatedUser(id=user_id, email=token_info.get("email", ""))
    _token_cache[token] = user
    logger.info("Authenticated user: %s (cache size: %d)", user, len(_token_cache))
    return user


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization header format. Expected: Bearer <token>")
    return parts[1]


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency resolving the caller.

    Usage:
        @router.get("/endpoint")
        async def endpoint(user: AuthenticatedUser = Depends(get_current_user)):
            ...
    """
    token = _extract_bearer_token(request.headers.get("Authorization"))
    return await verify_google_token(token)


def clear_token_cache() -> None:
    _token_cache.clear()
