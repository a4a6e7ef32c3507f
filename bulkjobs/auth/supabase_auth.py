"""Request authentication: Supabase JWTs for users, a shared secret for workers."""

import hmac
import logging

from fastapi import Header, HTTPException
from supabase import acreate_client
from bulkjobs.config import settings

logger = logging.getLogger(__name__)


async def verify_jwt(authorization: str = Header(None)) -> str:
    """Validate Supabase JWT from Authorization header.

    Returns the authenticated user's id.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.replace("Bearer ", "", 1)
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_anon_key)
        user_response = await client.auth.get_user(token)
        user = user_response.user if user_response else None
    except Exception:
        logger.info("Supabase rejected bearer token", exc_info=True)
        raise HTTPException(status_code=401, detail="Invalid token")
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user.id


async def verify_worker_secret(authorization: str = Header(None)) -> None:
    """Guard worker endpoints with `Bearer <WORKER_SECRET>`; open when unset."""
    secret = settings.worker_secret
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")
