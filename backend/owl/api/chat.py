import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from owl.agent.prompts import UNCONFIGURED_MESSAGE
from owl.api import get_service
from owl.service import OwlService
from owl.sse import SSE_HEADERS, activity_sse, sse_comment


logger = logging.getLogger("owl.api.chat")

router = APIRouter(prefix="/api", tags=["chat"])

# Comment frame interval so proxies keep idle SSE connections open
STREAM_HEARTBEAT_SECONDS = 15.0


class HistoryMessage(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    """Payload for one user message in a session."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message: str
    history: list[HistoryMessage] = Field(default_factory=list)


@router.post("/chat")
async def chat(request: ChatRequest, service: OwlService = Depends(get_service)) -> dict[str, Any]:
    if not request.session_id.strip() or not request.message.strip():
        raise HTTPException(status_code=400, detail="sessionId and message are required")

    logger.info(
        "chat[%s] message_len=%d history=%d",
        request.session_id,
        len(request.message),
        len(request.history),
    )
    if not service.settings.completion_configured:
        return {"message": {"content": UNCONFIGURED_MESSAGE, "rounds": 0, "stopReason": "unconfigured"}}

    outcome = await service.chat_outcome(
        request.session_id,
        request.message,
        [m.model_dump() for m in request.history],
    )
    return {
        "message": {
            "content": outcome.text,
            "rounds": outcome.rounds,
            "stopReason": outcome.stop_reason.value,
        }
    }


@router.get("/sessions/{session_key}/events")
async def session_events(
    session_key: str,
    request: Request,
    follow: bool = True,
    service: OwlService = Depends(get_service),
):
    """Stream a session's activity as SSE: retained history first, then live events."""

    async def event_generator() -> AsyncGenerator[str, None]:
        async with service.broadcaster.subscribe(session_key, replay=True) as sub:
            if not follow:
                while sub.pending():
                    event = await sub.get()
                    yield activity_sse(event)
                return
            while True:
                if await request.is_disconnected():
                    logger.debug("events[%s] client disconnected", session_key)
                    return
                event = await sub.get(timeout=STREAM_HEARTBEAT_SECONDS)
                if event is None:
                    yield sse_comment()
                    continue
                yield activity_sse(event)

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@router.get("/sessions/{session_key}/activities")
async def list_activities(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    return {
        "activities": [
            e.model_dump(mode="json") for e in service.broadcaster.history(session_key)
        ]
    }


@router.delete("/sessions/{session_key}/activities")
async def clear_activities(
    session_key: str, service: OwlService = Depends(get_service)
) -> dict[str, Any]:
    service.broadcaster.clear(session_key)
    return {"ok": True}
