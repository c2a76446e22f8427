from typing import Any

import httpx
from fastapi import APIRouter, Depends

from owl.api import get_service
from owl.service import OwlService


router = APIRouter(prefix="/api", tags=["models"])

ALLOWED_MODELS: list[str] = [
    "anthropic/claude-sonnet-4.5",
    "anthropic/claude-opus-4.5",
    "openai/gpt-5",
    "openai/gpt-5-mini",
    "openai/gpt-4.1",
]


@router.get("/models")
async def list_models(service: OwlService = Depends(get_service)) -> dict[str, Any]:
    """Return the models this server allows.

    With a gateway key configured, the allow-list is intersected with the
    gateway's advertised models; on a gateway error or an unreadable reply
    the allow-list is returned.
    """
    result = list(ALLOWED_MODELS)
    settings = service.settings
    if not settings.api_key:
        return {"models": result, "default": settings.model}

    url = f"{settings.base_url.rstrip('/')}/models"
    headers = {"Authorization": f"Bearer {settings.api_key}"}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
            data = resp.json()
            entries = data.get("data") if isinstance(data, dict) else None
            available_ids = {
                str(m.get("id")) for m in (entries or []) if isinstance(m, dict) and m.get("id")
            }
            intersected = [m for m in ALLOWED_MODELS if m in available_ids]
            return {"models": intersected or result, "default": settings.model}
    except (httpx.HTTPError, ValueError):
        return {"models": result, "default": settings.model}
