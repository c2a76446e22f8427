import asyncio
import base64
import logging
import shlex
from typing import Any

from vercel.sandbox import AsyncSandbox as Sandbox

from owl.sandbox.ports import CommandResult, DirEntry
from owl.sandbox.utils import normalize_relative_path


logger = logging.getLogger("owl.sandbox.vercel")


class VercelEnvironment:
    """ExecutionEnvironment backed by Vercel Sandbox microVMs."""

    def __init__(
        self,
        runtime: str | None = "node22",
        ports: list[int] | None = None,
        workdir: str = "app",
    ):
        self.runtime = runtime
        self.ports = ports or [3000]
        self.workdir = normalize_relative_path(workdir)

    def _root(self, sandbox: Sandbox) -> str:
        base = sandbox.sandbox.cwd.rstrip("/")
        return base if self.workdir == "." else f"{base}/{self.workdir}"

    def _in_root(self, sandbox: Sandbox, path: str) -> str:
        rel = normalize_relative_path(path)
        root = self._root(sandbox)
        return root if rel == "." else f"{root}/{rel}"

    async def _bash(self, sandbox: Sandbox, script: str) -> Any:
        return await sandbox.run_command("bash", ["-lc", script])

    async def create(self, lifetime_budget: float) -> tuple[str, Sandbox]:
        sandbox = await Sandbox.create(
            timeout=int(lifetime_budget * 1000),
            runtime=self.runtime,
            ports=self.ports,
        )
        done = await self._bash(sandbox, f"mkdir -p {shlex.quote(self._root(sandbox))}")
        if done.exit_code != 0:
            logger.warning(
                "create[%s] could not prepare workdir exit=%s", sandbox.sandbox_id, done.exit_code
            )
        return sandbox.sandbox_id, sandbox

    async def connect(self, environment_id: str) -> Sandbox:
        return await Sandbox.get(sandbox_id=environment_id)

    async def probe(self, handle: Sandbox) -> bool:
        done = await handle.run_command("echo", ["ping"])
        return done.exit_code == 0

    async def run(self, handle: Sandbox, command: str, timeout: float) -> CommandResult:
        script = f"cd {shlex.quote(self._root(handle))} && {command}"
        done = await asyncio.wait_for(self._bash(handle, script), timeout=timeout)
        stdout = await done.stdout()
        stderr = await done.stderr()
        return CommandResult(
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=int(done.exit_code or 0),
        )

    async def run_detached(self, handle: Sandbox, command: str) -> None:
        # The started process outlives this call (dev servers)
        script = f"cd {shlex.quote(self._root(handle))} && {command}"
        await handle.run_command_detached("bash", ["-lc", script])

    async def write_file(self, handle: Sandbox, path: str, data: bytes) -> None:
        rel = normalize_relative_path(path)
        target = rel if self.workdir == "." else f"{self.workdir}/{rel}"
        await handle.write_files([{"path": target, "content": data}])

    async def read_file(self, handle: Sandbox, path: str) -> bytes:
        target = shlex.quote(self._in_root(handle, path))
        done = await self._bash(handle, f"base64 {target}")
        if done.exit_code != 0:
            raise FileNotFoundError((await done.stderr() or "").strip() or path)
        return base64.b64decode(await done.stdout() or "")

    async def list_dir(self, handle: Sandbox, path: str) -> list[DirEntry]:
        target = shlex.quote(self._in_root(handle, path))
        done = await self._bash(
            handle, f"set -o pipefail; find {target} -mindepth 1 -maxdepth 1 -printf '%y\\t%f\\n' | sort -k2"
        )
        if done.exit_code != 0:
            raise FileNotFoundError((await done.stderr() or "").strip() or path)
        entries: list[DirEntry] = []
        for line in (await done.stdout() or "").splitlines():
            try:
                kind, name = line.split("\t", 1)
            except ValueError:
                continue
            entries.append(DirEntry(name=name, is_dir=kind == "d"))
        return entries

    async def exposed_address(self, handle: Sandbox, port: int) -> str:
        return handle.domain(port)

    async def destroy(self, handle: Sandbox) -> None:
        try:
            await handle.stop()
        finally:
            try:
                await handle.client.aclose()
            except Exception:
                logger.debug("destroy[%s] client close failed", handle.sandbox_id, exc_info=True)
