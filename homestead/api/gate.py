from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from homestead.logging import get_logger
from homestead.service.auth import AuthContext
from homestead.service.errors import AuthenticationError, AuthorizationError, ServiceError
from homestead.service.runtime import get_runtime

logger = get_logger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from ``Authorization: Bearer <token>``, else ``None``."""

    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


async def require_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Admit requests carrying a valid access token.

    No token is 401; a token that fails verification is 403. Anything
    unexpected while verifying rejects the request as well.
    """

    token = bearer_token(authorization)
    if not token:
        raise AuthenticationError("access token required")
    try:
        ctx = get_runtime().auth.authenticate_access(token)
    except ServiceError:
        raise
    except Exception as exc:
        logger.error("access_token_check_failed", error_type=type(exc).__name__)
        ctx = None
    if not ctx:
        raise AuthenticationError(
            "invalid or expired token", status_code=403, error_code="forbidden"
        )
    return ctx


async def require_admin(principal: AuthContext = Depends(require_user)) -> AuthContext:
    user = get_runtime().store.get_user(principal.user_id)
    if not user or not user.is_admin:
        logger.warning("admin_gate_denied", user_id=principal.user_id)
        raise AuthorizationError("admin access required")
    return principal
