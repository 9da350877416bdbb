from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .settings import get_settings

logger = logging.getLogger(__name__)

_security = HTTPBasic(auto_error=False, realm="habits")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": 'Basic realm="habits"'},
    )


# PUBLIC_INTERFACE
def get_basic_auth_dependency():
    """
    Return the route dependency guarding the user-scoped API.

    With ENABLE_BASIC_AUTH off (the default) the dependency does nothing.
    With it on, every request must carry BASIC_AUTH_USERNAME and
    BASIC_AUTH_PASSWORD; otherwise the request is rejected with 401 and a
    Basic challenge. Settings are read once, when the router is built.
    """
    settings = get_settings()

    if not settings.enable_basic_auth:
        async def _noop() -> None:
            return None

        return _noop

    expected_user: Optional[str] = settings.basic_auth_username
    expected_pass: Optional[str] = settings.basic_auth_password

    async def _enforce(creds: Optional[HTTPBasicCredentials] = Depends(_security)) -> None:
        if creds is None:
            raise _unauthorized("Not authenticated")
        if expected_user is None or expected_pass is None:
            logger.error("Basic auth is enabled but BASIC_AUTH_USERNAME/BASIC_AUTH_PASSWORD are not set")
            raise _unauthorized("Server authentication not configured")
        user_ok = secrets.compare_digest(creds.username.encode(), expected_user.encode())
        pass_ok = secrets.compare_digest(creds.password.encode(), expected_pass.encode())
        if not (user_ok and pass_ok):
            logger.warning("Rejected basic auth credentials for user %r", creds.username)
            raise _unauthorized("Invalid authentication credentials")

    return _enforce
