from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel


class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class DirEntry(BaseModel):
    name: str
    is_dir: bool = False


class ExecutionEnvironment(Protocol):
    """What the sandbox manager and tool executor need from a code-execution provider.

    ``handle`` is whatever object the provider hands back from ``create`` or
    ``connect``; the core never inspects it. Relative paths and commands are
    resolved against the environment's working root.
    """

    async def create(self, lifetime_budget: float) -> tuple[str, Any]: ...

    async def connect(self, environment_id: str) -> Any: ...

    async def probe(self, handle: Any) -> bool: ...

    async def run(self, handle: Any, command: str, timeout: float) -> CommandResult: ...

    async def run_detached(self, handle: Any, command: str) -> None: ...

    async def write_file(self, handle: Any, path: str, data: bytes) -> None: ...

    async def read_file(self, handle: Any, path: str) -> bytes: ...

    async def list_dir(self, handle: Any, path: str) -> list[DirEntry]: ...

    async def exposed_address(self, handle: Any, port: int) -> str: ...

    async def destroy(self, handle: Any) -> None: ...
