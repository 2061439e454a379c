"""Shared API dependencies.

Provides caller identity, admin checks, and rate limiting
as injectable FastAPI dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from fastapi import Depends, Header, Request

import redis.asyncio as aioredis
from app.config import get_settings
from app.dependencies import api_rate_limiter, get_redis, recalculate_rate_limiter
from app.exceptions import ForbiddenError, ValidationError
from app.logging_config import get_logger

logger = get_logger(__name__)


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity from the trusted X-User-ID header set by the gateway."""
    if not x_user_id:
        raise ValidationError("Missing X-User-ID header")
    return x_user_id


def is_admin(x_admin_key: Optional[str] = Header(None)) -> bool:
    """True when X-Admin-Key matches the configured admin key."""
    expected = get_settings().admin_key
    if expected is None or not x_admin_key:
        return False
    return hmac.compare_digest(x_admin_key, expected.get_secret_value())


def require_admin(admin: bool = Depends(is_admin)) -> None:
    if not admin:
        raise ForbiddenError("Admin access required")


def ensure_self_or_admin(user_id: str, caller_id: str, admin: bool) -> None:
    if user_id != caller_id and not admin:
        raise ForbiddenError("Cannot act on another user's data")


async def rate_limit_by_ip(
    request: Request,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Apply per-IP rate limiting for API calls."""
    client_ip = request.client.host if request.client else "unknown"
    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:16]
    await api_rate_limiter.check(ip_hash, redis)


async def rate_limit_recalculate(
    user_id: str = Depends(get_current_user_id),
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Per-user limit on explicit recalculation requests."""
    await recalculate_rate_limiter.check(user_id, redis)
