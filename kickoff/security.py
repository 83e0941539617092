"""Security: rate limiting, admin API key and webhook shared secret."""

import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException, Security
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from kickoff.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Detect production environment (Railway sets RAILWAY_ENVIRONMENT)
IS_PRODUCTION = os.getenv("RAILWAY_ENVIRONMENT") == "production" or os.getenv("RAILWAY_PROJECT_ID") is not None

# Rate limiter using client IP
limiter = Limiter(key_func=get_remote_address)

# API Key header for admin endpoints
api_key_header = APIKeyHeader(name=settings.API_KEY_HEADER, auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> bool:
    """
    Verify API key for admin endpoints.

    SECURITY: In production, API_KEY must be configured. Empty API_KEY
    blocks all admin requests (fail-closed). In development, empty API_KEY
    allows all requests for convenience.
    """
    if not settings.API_KEY:
        if IS_PRODUCTION:
            logger.error("API_KEY not configured in production - blocking admin access")
            raise HTTPException(
                status_code=503,
                detail="Service misconfigured. Admin access disabled.",
            )
        return True

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail=f"Missing API key. Provide it via {settings.API_KEY_HEADER} header.",
        )

    if not hmac.compare_digest(api_key, settings.API_KEY):
        logger.warning("Invalid API key attempt on admin endpoint")
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


async def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
) -> bool:
    """Shared-secret check for the Braze webhook. Open when WEBHOOK_SECRET is unset."""
    expected = settings.WEBHOOK_SECRET
    if not expected:
        return True

    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("[WEBHOOK] Rejected request with missing or invalid secret")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    return True
