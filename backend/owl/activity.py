"""Session-keyed activity stream.

The agent loop, tool executor and sandbox manager publish here; transports
(SSE today) subscribe. Publishing never blocks and never fails, whether or not
anyone is listening.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger("owl.activity")


class ActivityKind(str, Enum):
    TOOL_CALL = "tool_call"
    TERMINAL = "terminal"
    FILE_CHANGE = "file_change"
    PREVIEW_READY = "preview_ready"
    ERROR = "error"
    ENVIRONMENT_EXPIRED = "sandbox_expired"


def _new_event_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityEvent(BaseModel):
    """An immutable, timestamped progress notice for one session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_event_id)
    session_key: str
    kind: ActivityKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class Subscription:
    """A single observer's view of one session's stream."""

    def __init__(self, session_key: str, maxsize: int):
        self.session_key = session_key
        self.dropped = 0
        self._queue: asyncio.Queue[ActivityEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def _deliver(self, event: ActivityEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            # Slow observer: drop its oldest pending event rather than stall the publisher
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "subscription[%s] queue full, dropped oldest event (total dropped=%d)",
                self.session_key,
                self.dropped,
            )
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: float | None = None) -> ActivityEvent | None:
        """Next event, or None if ``timeout`` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ActivityEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class ActivityBroadcaster:
    """Fan-out publisher keyed by session.

    Each session keeps a bounded, append-only history. Delivery order to every
    subscriber equals publish order.
    """

    def __init__(self, history_limit: int = 500, subscriber_queue_size: int = 1000):
        self._history_limit = history_limit
        self._subscriber_queue_size = subscriber_queue_size
        self._history: dict[str, deque[ActivityEvent]] = {}
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def publish(self, event: ActivityEvent) -> None:
        history = self._history.get(event.session_key)
        if history is None:
            history = deque(maxlen=self._history_limit)
            self._history[event.session_key] = history
        history.append(event)
        for sub in list(self._subscribers.get(event.session_key, ())):
            sub._deliver(event)
        logger.debug("publish[%s] kind=%s", event.session_key, event.kind.value)

    def emit(self, session_key: str, kind: ActivityKind, **payload: Any) -> ActivityEvent:
        event = ActivityEvent(session_key=session_key, kind=kind, payload=payload)
        self.publish(event)
        return event

    @asynccontextmanager
    async def subscribe(
        self, session_key: str, replay: bool = True
    ) -> AsyncIterator[Subscription]:
        sub = Subscription(session_key, maxsize=self._subscriber_queue_size)
        if replay:
            for event in self._history.get(session_key, ()):
                sub._deliver(event)
        self._subscribers[session_key].add(sub)
        try:
            yield sub
        finally:
            sub.close()
            subs = self._subscribers.get(session_key)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[session_key]

    def history(self, session_key: str) -> list[ActivityEvent]:
        return list(self._history.get(session_key, ()))

    def clear(self, session_key: str) -> None:
        self._history.pop(session_key, None)

    def subscriber_count(self, session_key: str) -> int:
        return len(self._subscribers.get(session_key, ()))
