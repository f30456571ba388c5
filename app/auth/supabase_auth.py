"""Supabase JWT validation dependency for FastAPI."""

from fastapi import Header, HTTPException
from supabase import create_client
import structlog

from app.config import settings

logger = structlog.get_logger(__name__)


async def verify_jwt(authorization: str = Header(None)):
    """Validate Supabase JWT from Authorization header.

    Returns the authenticated user object.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.replace("Bearer ", "")
    try:
        client = create_client(settings.supabase_url, settings.supabase_anon_key)
        user_response = client.auth.get_user(token)
    except Exception as e:
        logger.info("jwt_rejected", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid token")
    if user_response is None or user_response.user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_response.user
