"""
verify.py
---------
Purpose:
    Service-token verification for the automation ops API.

Notes:
    - Callers present AUTOMATION_API_TOKEN as a Bearer token.
    - Provides `auth_dependency` for protected routes.
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings

_security = HTTPBearer(auto_error=False)


def verify_token(token: str | None) -> None:
    expected = settings.AUTOMATION_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Automation API token is not configured",
        )

    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid automation token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def auth_dependency(credentials: HTTPAuthorizationCredentials | None = Depends(_security)) -> dict:
    verify_token(credentials.credentials if credentials else None)
    return {"actor_type": "service"}
