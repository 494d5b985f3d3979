import hmac
from typing import Optional

import structlog
from fastapi import Header, HTTPException, Request

from .config import settings

logger = structlog.get_logger(component="auth")


def require_service_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)):
    """Guard for admin and diagnostic endpoints (X-API-KEY header)."""
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), settings.service_api_key.encode()):
        logger.warning("rejected service call", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True
