"""API key and caller authentication dependencies."""

import hmac
from dataclasses import dataclass

from fastapi import Header, HTTPException


@dataclass
class CallerContext:
    """Authenticated end user on whose behalf a request is made."""
    user_id: str


async def require_api_key(
    x_membership_api_key: str = Header(..., alias="X-Membership-Api-Key"),
) -> str:
    """FastAPI dependency that validates admin API key from header."""
    from membership_engine.common.config import get_settings

    settings = get_settings()
    if not hmac.compare_digest(x_membership_api_key, settings.api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_membership_api_key


async def require_caller(
    x_gateway_key: str = Header(None, alias="X-Gateway-Key"),
    x_user_id: str = Header(None, alias="X-User-Id"),
) -> CallerContext:
    """FastAPI dependency resolving the authenticated caller.

    Sessions are terminated by the platform's gateway, which forwards the
    user id together with its shared key. Requests without both are
    unauthenticated.
    """
    from membership_engine.common.config import get_settings

    settings = get_settings()
    if not x_gateway_key or not hmac.compare_digest(x_gateway_key, settings.gateway_key):
        raise HTTPException(status_code=401, detail="Authentication required")
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return CallerContext(user_id=x_user_id.strip())
