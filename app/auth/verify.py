"""
verify.py
---------
Purpose:
    Shared-secret check for the cron trigger and operator endpoints.

Notes:
    - Accepts the secret as a Bearer token, an ``X-API-Key`` header, or a
      ``?secret=`` query parameter (cron services differ in what they can send).
    - Comparison is constant time.
    - Provides `cron_auth_dependency` for protected routes.
"""

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_security = HTTPBearer(auto_error=False)


def verify_cron_secret(provided: str | None, expected: str | None = None) -> bool:
    expected = settings.CRON_SECRET if expected is None else expected
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def extract_secret(
    request: Request, credentials: HTTPAuthorizationCredentials | None
) -> str | None:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.headers.get("x-api-key") or request.query_params.get("secret")


def cron_auth_dependency(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> None:
    if not settings.CRON_SECRET:
        logger.error("CRON_SECRET not configured, rejecting protected request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    if not verify_cron_secret(extract_secret(request, credentials)):
        logger.warning("Unauthorized cron request", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
