"""Admin API key authentication dependency."""

from fastapi import Header, HTTPException


async def require_api_key(
    x_planward_api_key: str = Header(..., alias="X-Planward-Api-Key"),
) -> str:
    """FastAPI dependency that validates the admin API key from header."""
    from planward_engine.common.config import get_settings

    settings = get_settings()
    if x_planward_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_planward_api_key
