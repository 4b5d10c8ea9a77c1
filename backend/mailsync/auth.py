"""API auth: optional static API key for trigger and operator endpoints."""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from .config import settings

api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)


async def require_api_key(api_key: Optional[str] = Depends(api_key_header)) -> None:
    """
    Reject requests without the configured API key.
    With API_KEY unset the check is disabled (local development).
    """
    if not settings.api_key:
        return
    if not api_key or not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
