import asyncio
import logging
import posixpath
from typing import Any

from owl.activity import ActivityKind
from owl.sandbox.manager import SandboxManager


logger = logging.getLogger("owl.sandbox.files")

SKIP_DIRS: frozenset[str] = frozenset({"node_modules", ".next", ".git"})


async def collect_files(
    manager: SandboxManager, session_key: str, root: str = "."
) -> list[dict[str, Any]]:
    """Walk the session's working directory and return every readable text file.

    Paths are relative to the working root. Binary or unreadable files and
    dependency/build directories are skipped.
    """
    handle = await manager.acquire(session_key)
    env = manager.environment
    timeout = manager.settings.command_timeout_seconds
    files: list[dict[str, Any]] = []

    async def _walk(dir_path: str) -> None:
        try:
            entries = await asyncio.wait_for(env.list_dir(handle.native, dir_path), timeout)
        except Exception as exc:
            logger.debug("collect[%s] cannot list %s: %s", session_key, dir_path, exc)
            return
        for entry in entries:
            rel = entry.name if dir_path == "." else posixpath.join(dir_path, entry.name)
            if entry.is_dir:
                if entry.name not in SKIP_DIRS:
                    await _walk(rel)
                continue
            try:
                raw = await asyncio.wait_for(env.read_file(handle.native, rel), timeout)
                files.append({"path": rel, "content": raw.decode("utf-8")})
            except Exception:
                continue

    await _walk(root)
    manager.broadcaster.emit(
        session_key,
        ActivityKind.TERMINAL,
        output=f"Downloaded {len(files)} files from sandbox",
        type="info",
    )
    return files
