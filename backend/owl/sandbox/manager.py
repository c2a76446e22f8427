"""Sandbox lifecycle: one live execution environment per session key.

State per key::

    None --provision--> Provisioning --ready--> Active
    Active --probe fails--> Expired
    Active --release--> Terminated
    Provisioning --create fails--> None (ProvisionFailed raised)
    Expired/Terminated --provision--> Provisioning (fresh environment id)

All mutations of a key's entry happen under that key's lock. Unrelated keys
never contend. Keep-alive timers are tagged with the generation of the handle
they were started for, so a timer that outlives its handle cannot touch a
newer one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from owl.activity import ActivityBroadcaster, ActivityKind
from owl.config import OwlSettings
from owl.errors import EnvironmentExpired, NoEnvironment, ProvisionFailed
from owl.sandbox.ports import ExecutionEnvironment


logger = logging.getLogger("owl.sandbox")

EXPIRED_MESSAGE = 'Sandbox has expired. Click "Restart Sandbox" to continue.'


class SandboxState(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"


@dataclass
class SandboxHandle:
    """A live (or formerly live) execution environment bound to a session key.

    ``native`` is the provider's own handle object. Times are monotonic seconds.
    """

    session_key: str
    environment_id: str
    native: Any = field(repr=False)
    generation: int
    created_at: float
    state: SandboxState = SandboxState.PROVISIONING
    last_activity_at: float = 0.0
    last_probe_at: float = 0.0
    preview_url: str | None = None

    @property
    def live(self) -> bool:
        return self.state in (SandboxState.PROVISIONING, SandboxState.ACTIVE)


class KeepAliveStatus(BaseModel):
    alive: bool
    remaining_seconds: float | None = None


class SandboxStatus(BaseModel):
    active: bool
    environment_id: str | None = None
    preview_url: str | None = None


class SandboxManager:
    def __init__(
        self,
        environment: ExecutionEnvironment,
        broadcaster: ActivityBroadcaster,
        settings: OwlSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.environment = environment
        self.broadcaster = broadcaster
        self.settings = settings or OwlSettings()
        self._clock = clock

        self._handles: dict[str, SandboxHandle] = {}
        # Last known environment id per key; lets a fresh process reconnect
        self._known_ids: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._generations = itertools.count(1)
        # Create attempts are numbered so callers queued behind a failed
        # attempt share its ProvisionFailed instead of retrying
        self._create_seq = 0
        self._failures: dict[str, tuple[int, ProvisionFailed]] = {}

    # -------------------------
    # Public contract
    # -------------------------

    def remember(self, session_key: str, environment_id: str) -> None:
        """Record an environment id (e.g. from a session store) for later reconnection."""
        self._known_ids[session_key] = environment_id

    async def acquire(self, session_key: str) -> SandboxHandle:
        """Return a usable handle for ``session_key``; never creates one.

        Raises NoEnvironment when nothing was ever provisioned and
        EnvironmentExpired when the known environment turned out to be dead.
        """
        async with self._lock_for(session_key):
            return await self._acquire_locked(session_key)

    async def provision(self, session_key: str) -> SandboxHandle:
        """Return the live handle for ``session_key``, creating an environment if needed.

        Concurrent callers for the same key are serialized: exactly one create
        call is issued and every caller gets the same handle, or the same
        ProvisionFailed when that call fails. A later, non-overlapping call
        tries again.
        """
        entered = self._create_seq
        async with self._lock_for(session_key):
            try:
                return await self._acquire_locked(session_key)
            except NoEnvironment:
                pass
            failed = self._failures.get(session_key)
            if failed is not None and failed[0] > entered:
                logger.info("provision[%s] sharing failed attempt=%d", session_key, failed[0])
                raise failed[1]
            return await self._create_locked(session_key)

    async def keep_alive(
        self, session_key: str, generation: int | None = None
    ) -> KeepAliveStatus:
        """Probe the environment and report the remaining lifetime budget.

        ``generation`` is set by keep-alive timers; a mismatch means the timer
        belongs to a replaced handle and nothing is done.
        """
        async with self._lock_for(session_key):
            handle = self._handles.get(session_key)
            if handle is None or (generation is not None and handle.generation != generation):
                return KeepAliveStatus(alive=False)
            if await self._probe(handle):
                now = self._clock()
                handle.last_activity_at = now
                remaining = self.settings.lifetime_budget_seconds - (now - handle.created_at)
                return KeepAliveStatus(alive=True, remaining_seconds=max(0.0, remaining))
            self._discard_locked(session_key, handle, SandboxState.EXPIRED)
            return KeepAliveStatus(alive=False)

    async def release(self, session_key: str) -> bool:
        """Destroy the environment for ``session_key``.

        The handle is removed even when the provider's destroy call fails.
        Returns False if there was nothing to release.
        """
        async with self._lock_for(session_key):
            handle = self._handles.get(session_key)
            if handle is None:
                stored_id = self._known_ids.pop(session_key, None)
                if stored_id is None:
                    return False
                return await self._release_remembered(session_key, stored_id)
            self._discard_locked(session_key, handle, SandboxState.TERMINATED)
            await self._destroy(session_key, handle.environment_id, handle.native)
            return True

    def status(self, session_key: str) -> SandboxStatus:
        handle = self._handles.get(session_key)
        if handle is None or handle.state is not SandboxState.ACTIVE:
            return SandboxStatus(active=False)
        return SandboxStatus(
            active=True,
            environment_id=handle.environment_id,
            preview_url=handle.preview_url,
        )

    def active_sessions(self) -> list[str]:
        return [k for k, h in self._handles.items() if h.state is SandboxState.ACTIVE]

    async def shutdown(self) -> None:
        """Cancel every keep-alive timer. Environments are left running."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # -------------------------
    # Internals (caller holds the key's lock)
    # -------------------------

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    async def _acquire_locked(self, session_key: str) -> SandboxHandle:
        handle = self._handles.get(session_key)
        if handle is not None:
            if await self._is_alive(handle):
                handle.last_activity_at = self._clock()
                return handle
            self._discard_locked(session_key, handle, SandboxState.EXPIRED)
            raise EnvironmentExpired(session_key, EXPIRED_MESSAGE)

        stored_id = self._known_ids.get(session_key)
        if stored_id is None:
            raise NoEnvironment(session_key, f"No sandbox for session {session_key}")

        handle = await self._reconnect(session_key, stored_id)
        if handle is None:
            self._known_ids.pop(session_key, None)
            self._emit_expired(session_key, stored_id)
            raise EnvironmentExpired(session_key, EXPIRED_MESSAGE)
        return handle

    async def _reconnect(self, session_key: str, environment_id: str) -> SandboxHandle | None:
        try:
            native = await asyncio.wait_for(
                self.environment.connect(environment_id),
                timeout=self.settings.probe_timeout_seconds,
            )
        except Exception as exc:
            logger.info("reconnect[%s] env=%s failed: %s", session_key, environment_id, exc)
            return None
        now = self._clock()
        # Reconnected environments report no creation time; count the budget from now
        handle = SandboxHandle(
            session_key=session_key,
            environment_id=environment_id,
            native=native,
            generation=next(self._generations),
            created_at=now,
            last_activity_at=now,
        )
        if not await self._probe(handle):
            logger.info("reconnect[%s] env=%s not responding", session_key, environment_id)
            return None
        handle.preview_url = await self._resolve_preview(handle)
        self._activate_locked(handle)
        logger.info("reconnect[%s] adopted env=%s", session_key, environment_id)
        return handle

    async def _release_remembered(self, session_key: str, environment_id: str) -> bool:
        """Destroy an environment known only by id (e.g. from before a restart)."""
        try:
            native = await asyncio.wait_for(
                self.environment.connect(environment_id),
                timeout=self.settings.probe_timeout_seconds,
            )
        except Exception as exc:
            logger.info("release[%s] env=%s not reachable: %s", session_key, environment_id, exc)
            return False
        await self._destroy(session_key, environment_id, native)
        return True

    async def _destroy(self, session_key: str, environment_id: str, native: Any) -> None:
        try:
            await asyncio.wait_for(
                self.environment.destroy(native),
                timeout=self.settings.destroy_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("release[%s] destroy failed env=%s: %s", session_key, environment_id, exc)
        self.broadcaster.emit(
            session_key, ActivityKind.TERMINAL, output="Sandbox closed", type="info"
        )
        logger.info("release[%s] env=%s", session_key, environment_id)

    async def _create_locked(self, session_key: str) -> SandboxHandle:
        self._create_seq += 1
        attempt = self._create_seq
        self.broadcaster.emit(
            session_key,
            ActivityKind.TERMINAL,
            output="Creating sandbox environment...",
            type="info",
        )
        started = self._clock()
        timeout = self.settings.create_timeout_seconds
        try:
            environment_id, native = await asyncio.wait_for(
                self.environment.create(self.settings.lifetime_budget_seconds),
                timeout=timeout,
            )
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                message = f"timed out after {timeout:g}s"
                # The provider never returned an id, so nothing here can destroy it
                logger.warning(
                    "provision[%s] create timed out after %gs; the provider may still "
                    "finish it, leaving an orphaned sandbox until its lifetime budget ends",
                    session_key,
                    timeout,
                )
            else:
                message = str(exc) or exc.__class__.__name__
            logger.error("provision[%s] create failed attempt=%d: %s", session_key, attempt, message)
            self.broadcaster.emit(
                session_key,
                ActivityKind.ERROR,
                message=f"Failed to create sandbox: {message}",
            )
            error = ProvisionFailed(session_key, message)
            self._failures[session_key] = (attempt, error)
            raise error from exc
        self._failures.pop(session_key, None)

        now = self._clock()
        handle = SandboxHandle(
            session_key=session_key,
            environment_id=environment_id,
            native=native,
            generation=next(self._generations),
            created_at=started,
            last_activity_at=now,
            last_probe_at=now,
        )
        handle.preview_url = await self._resolve_preview(handle)
        self._activate_locked(handle)
        self._known_ids[session_key] = environment_id

        logger.info(
            "provision[%s] env=%s generation=%d duration_s=%.2f",
            session_key,
            environment_id,
            handle.generation,
            now - started,
        )
        self.broadcaster.emit(
            session_key,
            ActivityKind.TERMINAL,
            output=f"Sandbox created: {environment_id}",
            type="success",
        )
        if handle.preview_url:
            self.broadcaster.emit(
                session_key, ActivityKind.PREVIEW_READY, url=handle.preview_url
            )
        return handle

    def _activate_locked(self, handle: SandboxHandle) -> None:
        handle.state = SandboxState.ACTIVE
        self._handles[handle.session_key] = handle
        self._start_timer(handle)

    def _discard_locked(
        self, session_key: str, handle: SandboxHandle, state: SandboxState
    ) -> None:
        if self._handles.get(session_key) is not handle:
            return
        del self._handles[session_key]
        self._cancel_timer(session_key)
        handle.state = state
        self._known_ids.pop(session_key, None)
        if state is SandboxState.EXPIRED:
            self._emit_expired(session_key, handle.environment_id)

    def _emit_expired(self, session_key: str, environment_id: str) -> None:
        logger.warning("expired[%s] env=%s", session_key, environment_id)
        self.broadcaster.emit(
            session_key,
            ActivityKind.ENVIRONMENT_EXPIRED,
            message=EXPIRED_MESSAGE,
            environment_id=environment_id,
        )

    async def _is_alive(self, handle: SandboxHandle) -> bool:
        if self._clock() - handle.last_probe_at < self.settings.probe_grace_seconds:
            return True
        return await self._probe(handle)

    async def _probe(self, handle: SandboxHandle) -> bool:
        try:
            alive = await asyncio.wait_for(
                self.environment.probe(handle.native),
                timeout=self.settings.probe_timeout_seconds,
            )
        except Exception as exc:
            logger.info(
                "probe[%s] env=%s failed: %s", handle.session_key, handle.environment_id, exc
            )
            return False
        if alive:
            handle.last_probe_at = self._clock()
        return bool(alive)

    async def _resolve_preview(self, handle: SandboxHandle) -> str | None:
        try:
            return await asyncio.wait_for(
                self.environment.exposed_address(handle.native, self.settings.preview_port),
                timeout=self.settings.probe_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "preview[%s] env=%s no address for port %d: %s",
                handle.session_key,
                handle.environment_id,
                self.settings.preview_port,
                exc,
            )
            return None

    # -------------------------
    # Keep-alive timers
    # -------------------------

    def _start_timer(self, handle: SandboxHandle) -> None:
        self._cancel_timer(handle.session_key)
        self._timers[handle.session_key] = asyncio.create_task(
            self._keepalive_loop(handle.session_key, handle.generation),
            name=f"owl-keepalive-{handle.session_key}-{handle.generation}",
        )

    def _cancel_timer(self, session_key: str) -> None:
        task = self._timers.pop(session_key, None)
        # A timer removing its own handle just drops out of the table and returns
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self, session_key: str, generation: int) -> None:
        interval = self.settings.keepalive_interval_seconds
        while True:
            await asyncio.sleep(interval)
            handle = self._handles.get(session_key)
            if handle is None or handle.generation != generation:
                return
            status = await self.keep_alive(session_key, generation=generation)
            if not status.alive:
                return
            logger.debug(
                "keepalive[%s] generation=%d remaining_s=%.0f",
                session_key,
                generation,
                status.remaining_seconds or 0.0,
            )
