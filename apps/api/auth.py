# File: apps/api/auth.py
import asyncio
import hmac
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException
from firebase_admin import auth as firebase_auth

from .settings import settings

logger = logging.getLogger(__name__)


async def _to_thread(fn, timeout_s: float = 25.0):
    """Run blocking SDK calls off the event loop with a soft timeout."""
    return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout_s)


# Process-local cache of verified tokens to avoid an Admin SDK call per request.
_TOKEN_CACHE: dict[str, tuple[float, dict]] = {}


def _cache_get(cache: dict, key: str):
    item = cache.get(key)
    if not item:
        return None
    expires_at, value = item
    if expires_at < time.time():
        cache.pop(key, None)
        return None
    return value


def _cache_set(cache: dict, key: str, value: dict, ttl_s: float):
    cache[key] = (time.time() + float(ttl_s), value)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    return token


async def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Verify the Firebase ID token and return the owner identity ({uid, email})."""
    token = _bearer_token(authorization)

    decoded_token = _cache_get(_TOKEN_CACHE, token)
    if not decoded_token:
        try:
            decoded_token = await _to_thread(lambda: firebase_auth.verify_id_token(token), timeout_s=25.0)
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError) as e:
            raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
        except asyncio.TimeoutError:
            raise HTTPException(status_code=503, detail="Token verification timed out")
        _cache_set(_TOKEN_CACHE, token, decoded_token, ttl_s=60.0)

    uid = decoded_token.get("uid")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token structure")
    return {"uid": uid, "email": decoded_token.get("email")}


def require_cron(authorization: Optional[str] = Header(None)) -> None:
    """Scheduler triggers: Authorization: Bearer <CRON_SECRET>. No secret configured rejects all calls."""
    secret = (settings.CRON_SECRET or "").strip()
    if not secret:
        logger.warning("Cron trigger rejected: CRON_SECRET is not configured")
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = _bearer_token(authorization)
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
