import logging
from typing import Any

from owl.activity import ActivityBroadcaster
from owl.agent.completion import Completion, OpenAICompletion, UnconfiguredCompletion
from owl.agent.conversation import Turn
from owl.agent.loop import ChatOutcome, ConversationDriver
from owl.agent.tools import ToolExecutor
from owl.config import OwlSettings
from owl.sandbox.files import collect_files
from owl.sandbox.manager import KeepAliveStatus, SandboxHandle, SandboxManager, SandboxStatus
from owl.sandbox.ports import ExecutionEnvironment


logger = logging.getLogger("owl.service")


class OwlService:
    """Public entry points: chat, status, keep-alive, release (plus provisioning and download)."""

    def __init__(
        self,
        settings: OwlSettings,
        environment: ExecutionEnvironment,
        completion: Completion,
        broadcaster: ActivityBroadcaster | None = None,
    ):
        self.settings = settings
        self.broadcaster = broadcaster or ActivityBroadcaster(
            history_limit=settings.activity_history_limit
        )
        self.manager = SandboxManager(environment, self.broadcaster, settings)
        self.executor = ToolExecutor(self.manager)
        self.driver = ConversationDriver(
            self.manager,
            self.executor,
            completion,
            max_rounds=settings.max_rounds,
        )

    @classmethod
    def from_settings(cls, settings: OwlSettings) -> "OwlService":
        from owl.sandbox.vercel import VercelEnvironment

        environment = VercelEnvironment(
            runtime=settings.runtime,
            ports=[settings.preview_port],
            workdir=settings.workdir,
        )
        completion: Completion
        if settings.completion_configured:
            completion = OpenAICompletion(
                model=settings.model,
                api_key=settings.api_key,
                base_url=settings.base_url,
                timeout=settings.completion_timeout_seconds,
            )
        else:
            completion = UnconfiguredCompletion()
        return cls(settings, environment, completion)

    async def chat(
        self,
        session_key: str,
        message: str,
        history: list[dict[str, Any]] | list[Turn] | None = None,
    ) -> str:
        outcome = await self.chat_outcome(session_key, message, history)
        return outcome.text

    async def chat_outcome(
        self,
        session_key: str,
        message: str,
        history: list[dict[str, Any]] | list[Turn] | None = None,
    ) -> ChatOutcome:
        return await self.driver.chat(session_key, message, history)

    async def provision(self, session_key: str) -> SandboxHandle:
        return await self.manager.provision(session_key)

    def get_status(self, session_key: str) -> SandboxStatus:
        return self.manager.status(session_key)

    async def keep_alive(self, session_key: str) -> KeepAliveStatus:
        return await self.manager.keep_alive(session_key)

    async def release(self, session_key: str) -> bool:
        return await self.manager.release(session_key)

    async def collect_files(self, session_key: str) -> list[dict[str, Any]]:
        return await collect_files(self.manager, session_key)

    async def shutdown(self) -> None:
        active = self.manager.active_sessions()
        await self.manager.shutdown()
        logger.info("shutdown: keep-alive timers cancelled for %d sandbox(es)", len(active))
