"""API auth: optional static API key. Disabled when API_KEY is not set."""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import APIKeyHeader

from .config import settings

api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)


def _check_api_key(provided: Optional[str]) -> None:
    if not settings.api_key:
        return
    if provided and secrets.compare_digest(provided, settings.api_key):
        return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def require_api_key(api_key: Optional[str] = Depends(api_key_header)) -> None:
    _check_api_key(api_key)


async def require_api_key_for_sse(
    api_key: Optional[str] = Depends(api_key_header),
    key: Optional[str] = Query(None, alias="api_key"),
) -> None:
    """EventSource cannot set headers, so SSE also accepts ?api_key=."""
    _check_api_key(api_key or key)
