import logging
from typing import Any

from fastapi import APIRouter, Depends

from owl.api import get_service
from owl.service import OwlService


logger = logging.getLogger("owl.api.sandbox")

router = APIRouter(prefix="/api/sandbox", tags=["sandbox"])


@router.post("/{session_key}")
async def provision_sandbox(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    handle = await service.provision(session_key)
    return {"sandboxId": handle.environment_id, "previewUrl": handle.preview_url}


@router.get("/{session_key}")
async def sandbox_status(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    status = service.get_status(session_key)
    if not status.active:
        return {"active": False}
    return {
        "active": True,
        "sandboxId": status.environment_id,
        "previewUrl": status.preview_url,
    }


@router.post("/{session_key}/keepalive")
async def keep_alive(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    status = await service.keep_alive(session_key)
    if not status.alive:
        return {"alive": False}
    return {"alive": True, "remainingSeconds": status.remaining_seconds}


@router.delete("/{session_key}")
async def release_sandbox(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    released = await service.release(session_key)
    logger.info("release_sandbox[%s] released=%s", session_key, released)
    return {"ok": True, "released": released}


@router.get("/{session_key}/files")
async def download_files(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    return {"files": await service.collect_files(session_key)}
