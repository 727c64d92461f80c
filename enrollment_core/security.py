"""Bearer token guard for calls coming from the route layer."""
from __future__ import annotations

import logging
import secrets
from typing import Iterable, Optional, Tuple

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("enrollment.security")


def _reject(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


class TokenAuth:
    """Accept requests carrying one of the configured service tokens.

    These tokens identify the calling route layer. They are unrelated to the
    privileged record store credential, which never leaves this service.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        cleaned: Tuple[str, ...] = tuple(token.strip() for token in tokens if token.strip())
        if not cleaned:
            raise ValueError("At least one API token must be provided")
        self._tokens = cleaned
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> None:
        credentials: Optional[HTTPAuthorizationCredentials] = await self._bearer(request)
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise _reject(status.HTTP_401_UNAUTHORIZED, "missing_token", "Missing bearer token")

        matched = False
        for token in self._tokens:
            matched |= secrets.compare_digest(credentials.credentials, token)
        if not matched:
            raise _reject(status.HTTP_403_FORBIDDEN, "invalid_token", "Invalid API token")


def build_auth(tokens: Iterable[str]) -> Optional[TokenAuth]:
    """Return a guard for ``tokens``, or ``None`` (with a warning) when none are configured."""
    token_list = [token for token in tokens if token.strip()]
    if not token_list:
        logger.warning("No API tokens configured; the enrollment API accepts unauthenticated calls")
        return None
    return TokenAuth(token_list)


__all__ = ["TokenAuth", "build_auth"]
