from typing import Optional

from fastapi import Header, HTTPException, status

import conf
from models.errors import (
    Conflict,
    DependencyFailure,
    EngineError,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from utils import log

logger = log.get_logger(__name__)

_ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (Conflict, status.HTTP_409_CONFLICT),
    (DependencyFailure, status.HTTP_502_BAD_GATEWAY),
]


def engine_error_to_http(error: EngineError) -> HTTPException:
    """Translate a domain error into the HTTPException the route should raise."""
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(error, error_cls):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"{error.code}: {error.message}")
    detail = {"code": error.code, "message": error.message}
    if error.details:
        detail["details"] = error.details
    return HTTPException(status_code=status_code, detail=detail)


async def current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller identity as forwarded by the authentication gateway."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


async def require_admin(x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key")):
    expected = conf.get_admin_api_key()
    if not expected:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access is disabled")
    if x_admin_api_key != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return True


async def is_admin(x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key")) -> bool:
    expected = conf.get_admin_api_key()
    return bool(expected) and x_admin_api_key == expected
