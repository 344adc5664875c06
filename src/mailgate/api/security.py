# mailgate: API Security - Admin token for the status endpoints
#
# Quota status is operator data. Every route requires the token from
# MAILGATE_ADMIN_TOKEN in the X-Admin-Token header. With no token
# configured the endpoints answer 503 rather than being open.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from ..config import get_settings


def _configured_token() -> Optional[str]:
    return get_settings().admin_token


async def verify_admin_token(x_admin_token: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: reject requests without the admin token.

    Usage in routes:
        @router.get("", dependencies=[Depends(verify_admin_token)])
    """
    expected = _configured_token()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin token not configured",
        )

    if x_admin_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Token header",
        )

    # Constant-time comparison
    if not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )

    return x_admin_token
