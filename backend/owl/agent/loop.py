import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from owl.activity import ActivityKind
from owl.agent.completion import Completion
from owl.agent.conversation import Conversation, Turn
from owl.agent.prompts import FALLBACK_TEXT
from owl.agent.tools import TOOL_SCHEMA, ToolExecutor
from owl.errors import CompletionFailed
from owl.sandbox.manager import SandboxManager


logger = logging.getLogger("owl.agent")

DEFAULT_MAX_ROUNDS = 25


class StopReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"


class ChatOutcome(BaseModel):
    text: str
    rounds: int
    stop_reason: StopReason
    turns: list[Turn] = Field(default_factory=list)


class ConversationDriver:
    """Drives completion round-trips and tool dispatch for one user message.

    Each round asks the completion port for the next turn. A turn without
    tool invocations ends the loop; otherwise every invocation runs in order
    and its result is appended before the next round. The number of rounds
    is capped at ``max_rounds``.
    """

    def __init__(
        self,
        manager: SandboxManager,
        executor: ToolExecutor,
        completion: Completion,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        tool_schema: list[dict[str, Any]] | None = None,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.manager = manager
        self.executor = executor
        self.completion = completion
        self.max_rounds = max_rounds
        self.tool_schema = tool_schema or TOOL_SCHEMA
        self.broadcaster = manager.broadcaster

    async def chat(
        self,
        session_key: str,
        user_message: str,
        prior_turns: list[dict[str, Any]] | list[Turn] | None = None,
    ) -> ChatOutcome:
        if not user_message or not user_message.strip():
            raise ValueError("user_message must be non-empty")

        conversation = Conversation.from_history(prior_turns, user_message)
        # Provision/acquire failures abort the whole chat
        handle = await self.manager.provision(session_key)
        logger.info(
            "chat[%s] start env=%s history=%d",
            session_key,
            handle.environment_id,
            len(conversation) - 1,
        )

        texts: list[str] = []
        for round_no in range(1, self.max_rounds + 1):
            try:
                turn = await self.completion.next_turn(conversation, self.tool_schema)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                logger.error("chat[%s] completion failed round=%d: %s", session_key, round_no, message)
                self.broadcaster.emit(
                    session_key, ActivityKind.ERROR, message=f"Model request failed: {message}"
                )
                if isinstance(exc, CompletionFailed):
                    raise
                raise CompletionFailed(session_key, message) from exc

            conversation.append_assistant(turn)
            if turn.text and turn.text.strip():
                texts.append(turn.text.strip())

            if not turn.tool_invocations:
                logger.info("chat[%s] done rounds=%d", session_key, round_no)
                return ChatOutcome(
                    text="\n\n".join(texts) or FALLBACK_TEXT,
                    rounds=round_no,
                    stop_reason=StopReason.COMPLETED,
                    turns=conversation.turns,
                )

            # In order: later invocations see earlier effects
            for invocation in turn.tool_invocations:
                self.broadcaster.emit(
                    session_key,
                    ActivityKind.TOOL_CALL,
                    id=invocation.id,
                    name=invocation.name,
                    input=dict(invocation.arguments),
                    status="executing",
                )
                done = await self.executor.execute(session_key, invocation)
                conversation.append_tool_result(done)

        logger.warning(
            "chat[%s] stopped at max_rounds=%d with tool calls still pending",
            session_key,
            self.max_rounds,
        )
        self.broadcaster.emit(
            session_key,
            ActivityKind.ERROR,
            level="warning",
            message=(
                f"Stopped after {self.max_rounds} model round-trips; "
                "the agent was still calling tools."
            ),
        )
        return ChatOutcome(
            text="\n\n".join(texts) or FALLBACK_TEXT,
            rounds=self.max_rounds,
            stop_reason=StopReason.MAX_ITERATIONS_EXCEEDED,
            turns=conversation.turns,
        )
