from owl.sandbox.manager import (
    KeepAliveStatus,
    SandboxHandle,
    SandboxManager,
    SandboxState,
    SandboxStatus,
)
from owl.sandbox.ports import CommandResult, DirEntry, ExecutionEnvironment


__all__ = [
    "CommandResult",
    "DirEntry",
    "ExecutionEnvironment",
    "KeepAliveStatus",
    "SandboxHandle",
    "SandboxManager",
    "SandboxState",
    "SandboxStatus",
]
