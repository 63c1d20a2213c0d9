"""
FastAPI dependency for internal service authentication.

Flow:
  1. Extract Bearer token from Authorization header
  2. Hash the token (SHA-256)
  3. Compare against settings.SERVICE_TOKEN_HASH in constant time

Security:
  • Generic 401 for ALL failure modes (missing, malformed, wrong token)
  • Raw tokens are NEVER logged
  • An empty SERVICE_TOKEN_HASH rejects everything
"""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException, status

from keyrotation.auth.hashing import token_matches
from keyrotation.core.config import settings

logger = logging.getLogger(__name__)

# Generic 401 — same message for all auth failures to avoid leaking info
_AUTH_FAILED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or missing service token.",
    headers={"WWW-Authenticate": "Bearer"},
)


async def require_service_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    """
    FastAPI dependency — rejects requests without the internal service token.

    Usage in routers:
        router = APIRouter(dependencies=[Depends(require_service_token)])
    """
    if not authorization:
        raise _AUTH_FAILED

    parts = authorization.split(" ", maxsplit=1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _AUTH_FAILED

    if not settings.SERVICE_TOKEN_HASH:
        logger.error("SERVICE_TOKEN_HASH is not configured; rejecting request")
        raise _AUTH_FAILED

    if not token_matches(parts[1], settings.SERVICE_TOKEN_HASH):
        raise _AUTH_FAILED
