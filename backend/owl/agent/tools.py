import asyncio
import logging
import posixpath
import shlex
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from owl.activity import ActivityKind
from owl.agent.conversation import ToolInvocation, ToolOutcome
from owl.errors import ToolError
from owl.sandbox.manager import SandboxHandle, SandboxManager
from owl.sandbox.utils import normalize_relative_path, truncate_tail


logger = logging.getLogger("owl.agent.tools")

# Keep tool results small enough for the model's context
MAX_RESULT_CHARS = 12_000


class ToolName(str, Enum):
    WRITE_FILE = "write_file"
    RUN_COMMAND = "run_command"
    READ_FILE = "read_file"
    LIST_FILES = "list_files"
    START_DEV_SERVER = "start_dev_server"


TOOL_SCHEMA: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": ToolName.WRITE_FILE.value,
            "description": "Create or overwrite a file in the project. Parent directories are created automatically.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Project-relative file path"},
                    "content": {"type": "string", "description": "Full file content"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.RUN_COMMAND.value,
            "description": "Run a shell command in the project directory and return its stdout, or 'Error (exit N): <stderr>' on failure.",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to run"},
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.READ_FILE.value,
            "description": "Read a project file.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Project-relative file path"},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.LIST_FILES.value,
            "description": "List a project directory. Directories are shown with a trailing '/'.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Project-relative directory (default '.')"},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.START_DEV_SERVER.value,
            "description": "Start a long-running dev server in the background and publish its preview URL.",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "Server command (default 'npm run dev -- --port <port>')",
                    },
                    "port": {"type": "integer", "description": "Port the server listens on"},
                },
            },
        },
    },
]


class ToolOutput(BaseModel):
    text: str
    ok: bool = True


Handler = Callable[[str, SandboxHandle, dict[str, Any]], Awaitable[ToolOutput]]


def _require(session_key: str, args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or not str(value).strip():
        raise ToolError(session_key, f"missing required argument '{key}'")
    return str(value)


class ToolExecutor:
    """Runs one tool invocation against the session's sandbox.

    Never raises for tool-level failures: every invocation yields exactly one
    result text, prefixed with ``Error`` when it failed.
    """

    def __init__(self, manager: SandboxManager):
        self.manager = manager
        self.environment = manager.environment
        self.broadcaster = manager.broadcaster
        self.settings = manager.settings
        self._handlers: dict[ToolName, Handler] = {
            ToolName.WRITE_FILE: self._write_file,
            ToolName.RUN_COMMAND: self._run_command,
            ToolName.READ_FILE: self._read_file,
            ToolName.LIST_FILES: self._list_files,
            ToolName.START_DEV_SERVER: self._start_dev_server,
        }
        missing = set(ToolName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for tools: {sorted(t.value for t in missing)}")

    async def execute(self, session_key: str, invocation: ToolInvocation) -> ToolInvocation:
        try:
            name = ToolName(invocation.name)
        except ValueError:
            logger.warning("tool[%s] unknown tool name=%s", session_key, invocation.name)
            return self._finish(
                invocation, ToolOutput(text=f"Unknown tool: {invocation.name}", ok=False)
            )

        args = {k: v for k, v in (invocation.arguments or {}).items() if v is not None}
        try:
            handle = await self.manager.acquire(session_key)
            output = await self._handlers[name](session_key, handle, args)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("tool[%s] %s failed: %s", session_key, name.value, message)
            self.broadcaster.emit(
                session_key,
                ActivityKind.ERROR,
                message=f"{name.value} failed: {message}",
                tool_call_id=invocation.id,
            )
            output = ToolOutput(text=f"Error: {message}", ok=False)
        return self._finish(invocation, output)

    def _finish(self, invocation: ToolInvocation, output: ToolOutput) -> ToolInvocation:
        return invocation.model_copy(
            update={
                "result_text": truncate_tail(output.text, MAX_RESULT_CHARS),
                "outcome": ToolOutcome.SUCCESS if output.ok else ToolOutcome.TOOL_ERROR,
            }
        )

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.settings.command_timeout_seconds)

    # -------------------------
    # Handlers
    # -------------------------

    async def _write_file(
        self, session_key: str, handle: SandboxHandle, args: dict[str, Any]
    ) -> ToolOutput:
        path = normalize_relative_path(_require(session_key, args, "path"))
        content = args.get("content")
        if not content:
            raise ToolError(session_key, f"write_file requires non-empty content for {path}")
        content = str(content)

        parent = posixpath.dirname(path)
        if parent:
            made = await self._call(
                self.environment.run(
                    handle.native,
                    f"mkdir -p {shlex.quote(parent)}",
                    self.settings.command_timeout_seconds,
                )
            )
            if made.exit_code != 0:
                raise ToolError(
                    session_key, f"could not create directory {parent}: {made.stderr.strip()}"
                )

        data = content.encode("utf-8")
        await self._call(self.environment.write_file(handle.native, path, data))
        self.broadcaster.emit(
            session_key, ActivityKind.FILE_CHANGE, action="write", path=path, size=len(data)
        )
        return ToolOutput(text=f"Wrote {len(data)} bytes to {path}")

    async def _run_command(
        self, session_key: str, handle: SandboxHandle, args: dict[str, Any]
    ) -> ToolOutput:
        command = _require(session_key, args, "command")
        self.broadcaster.emit(
            session_key, ActivityKind.TERMINAL, output=f"$ {command}", type="command"
        )
        result = await self._call(
            self.environment.run(handle.native, command, self.settings.command_timeout_seconds)
        )
        if result.stdout:
            self.broadcaster.emit(
                session_key, ActivityKind.TERMINAL, output=result.stdout, type="stdout"
            )
        if result.stderr:
            self.broadcaster.emit(
                session_key, ActivityKind.TERMINAL, output=result.stderr, type="stderr"
            )
        if result.exit_code != 0:
            self.broadcaster.emit(
                session_key,
                ActivityKind.TERMINAL,
                output=f"Process exited with code {result.exit_code}",
                type="error",
            )
            detail = result.stderr.strip() or result.stdout.strip()
            return ToolOutput(text=f"Error (exit {result.exit_code}): {detail}", ok=False)
        return ToolOutput(text=result.stdout or "(command produced no output)")

    async def _read_file(
        self, session_key: str, handle: SandboxHandle, args: dict[str, Any]
    ) -> ToolOutput:
        path = normalize_relative_path(_require(session_key, args, "path"))
        raw = await self._call(self.environment.read_file(handle.native, path))
        return ToolOutput(text=raw.decode("utf-8", errors="replace"))

    async def _list_files(
        self, session_key: str, handle: SandboxHandle, args: dict[str, Any]
    ) -> ToolOutput:
        path = normalize_relative_path(str(args.get("path") or "."))
        entries = await self._call(self.environment.list_dir(handle.native, path))
        if not entries:
            return ToolOutput(text=f"{path} is empty")
        return ToolOutput(
            text="\n".join(f"{e.name}/" if e.is_dir else e.name for e in entries)
        )

    async def _start_dev_server(
        self, session_key: str, handle: SandboxHandle, args: dict[str, Any]
    ) -> ToolOutput:
        port = int(args.get("port") or self.settings.preview_port)
        command = str(args.get("command") or f"npm run dev -- --port {port}")
        self.broadcaster.emit(
            session_key,
            ActivityKind.TERMINAL,
            output=f"Starting dev server on port {port}...",
            type="info",
        )
        await self._call(self.environment.run_detached(handle.native, command))
        url = await self._call(self.environment.exposed_address(handle.native, port))
        if port == self.settings.preview_port:
            handle.preview_url = url
        self.broadcaster.emit(session_key, ActivityKind.PREVIEW_READY, url=url, port=port)
        return ToolOutput(text=f"Dev server starting in the background on port {port}. Preview: {url}")
