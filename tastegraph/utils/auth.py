"""Caller identification and admin guard.

Recommendation endpoints accept anonymous callers; a bearer token only
decides which rate-limit counters a request is charged to. Admin endpoints
require a valid token whose email is listed in ADMIN_EMAILS.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import settings
from tastegraph.utils.local_tokens import decode_access_token

# HTTP Bearer token security scheme
security_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Bearer token authentication",
    auto_error=False,
)


@dataclass
class Caller:
    user_id: str
    email: Optional[str] = None
    authenticated: bool = False


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> dict:
    """Decode a bearer token into ``{"user_id", "email"}``.

    Raises:
        HTTPException: If token is invalid, expired or missing claims
    """
    try:
        payload = decode_access_token(token)
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc

    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise _unauthorized("Invalid token payload")
    return {"user_id": str(user_id), "email": email}


async def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme),
) -> Caller:
    """Authenticated caller when a token is sent, otherwise an anonymous caller keyed by client address."""
    if credentials and credentials.credentials.strip():
        claims = verify_token(credentials.credentials.strip())
        return Caller(user_id=claims["user_id"], email=claims["email"], authenticated=True)

    host = request.client.host if request.client else "unknown"
    return Caller(user_id=f"anonymous:{host}")


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    """Dependency for administrative endpoints."""
    if not caller.authenticated:
        raise _unauthorized("Authentication required")

    admins = {email.lower() for email in settings.ADMIN_EMAILS}
    if not caller.email or caller.email.lower() not in admins:
        app_logger.warning(f"Admin access denied for user {caller.user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return caller


GetCaller = Depends(get_caller)
RequireAdmin = Depends(require_admin)
