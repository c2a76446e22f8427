import json
from typing import Any

from owl.activity import ActivityEvent


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def sse_comment(text: str = "keep-alive") -> str:
    return f": {text}\n\n"


def activity_sse(event: ActivityEvent) -> str:
    return sse_format(
        {
            "id": event.id,
            "event_type": event.kind.value,
            "session_key": event.session_key,
            "timestamp": event.timestamp.isoformat(),
            "data": event.payload,
        }
    )
