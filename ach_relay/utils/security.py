from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from ach_relay.config import settings

logger = logging.getLogger(__name__)

_basic_scheme = HTTPBasic()
_bearer_scheme = HTTPBearer(auto_error=False, scheme_name="BearerAuth")


def _unauthorized(scheme: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": scheme},
    )


def _matches(supplied: str | None, expected: str) -> bool:
    # an unset secret never authenticates
    if not expected:
        return False
    return secrets.compare_digest((supplied or "").encode(), expected.encode())


def require_basic_auth(credentials: HTTPBasicCredentials = Depends(_basic_scheme)) -> None:
    """Guard for the API documentation endpoints."""

    username_valid = _matches(credentials.username, settings.api_basic_username)
    password_valid = _matches(credentials.password, settings.api_basic_password)
    if not (username_valid and password_valid):
        raise _unauthorized("Basic")


def verify_bearer_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
) -> None:
    """Guard for the ACH endpoints called by the main application."""

    token = credentials.credentials.strip() if credentials is not None else ""
    if not _matches(token, settings.api_bearer_token):
        logger.warning(
            "bearer token rejected",
            extra={"endpoint": request.url.path, "method": request.method},
        )
        raise _unauthorized("Bearer")
