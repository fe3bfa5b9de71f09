import logging
import secrets

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from app.core.settings import settings

logger = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False, realm="checkout")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": 'Basic realm="checkout"'},
    )


def require_basic_auth(credentials: HTTPBasicCredentials | None = Depends(security)) -> None:
    """Guards the endpoints the storefront checkout flow calls server-to-server."""
    if not settings.basic_auth_enabled:
        return

    if settings.basic_auth_username is None or settings.basic_auth_password is None:
        raise RuntimeError("Basic Auth enabled but credentials are not set")

    if credentials is None:
        raise _unauthorized("Authentication required")

    username_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.basic_auth_username.encode("utf-8")
    )
    password_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.basic_auth_password.encode("utf-8")
    )

    if not (username_ok and password_ok):
        logger.warning("auth.basic.rejected username=%s", credentials.username)
        raise _unauthorized("Invalid credentials")
