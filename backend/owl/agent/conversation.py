import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolOutcome(str, Enum):
    SUCCESS = "success"
    TOOL_ERROR = "tool_error"


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolInvocation(BaseModel):
    """One requested action and, once executed, its outcome."""

    id: str = Field(default_factory=_new_call_id)
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result_text: str | None = None
    outcome: ToolOutcome | None = None

    @property
    def completed(self) -> bool:
        return self.result_text is not None


class AssistantTurn(BaseModel):
    """What the completion service returned for one round-trip."""

    text: str = ""
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)


class Turn(BaseModel):
    role: Role
    content: str = ""
    # assistant turns: the invocations requested in this turn
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)
    # tool-result turns: which invocation this answers
    tool_call_id: str | None = None
    name: str | None = None
    outcome: ToolOutcome | None = None


class ConversationError(ValueError):
    pass


class Conversation:
    """Append-only turn list for a single agent-loop invocation.

    Tool-result turns must directly follow the assistant turn that requested
    them, one per invocation and in request order; ``append_*`` enforces this.
    """

    def __init__(self, turns: list[Turn] | None = None):
        self._turns: list[Turn] = []
        self._pending: list[ToolInvocation] = []
        for turn in turns or []:
            self._append(turn)

    @classmethod
    def from_history(
        cls, history: list[dict[str, Any]] | list[Turn] | None, user_message: str
    ) -> "Conversation":
        """Build from caller history (``{role, content}`` dicts or Turns) plus the new message.

        Invocations left unanswered at the end of the history are dropped.
        Any other misordered tool turn raises ConversationError.
        """
        conversation = cls()
        for item in history or []:
            if isinstance(item, Turn):
                conversation._append(item)
                continue
            role = str(item.get("role", ""))
            content = str(item.get("content") or "")
            if role not in (Role.USER.value, Role.ASSISTANT.value) or not content:
                continue
            conversation._append(Turn(role=Role(role), content=content))
        conversation._drop_unanswered()
        conversation.append_user(user_message)
        return conversation

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def pending(self) -> list[ToolInvocation]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._turns)

    def append_user(self, content: str) -> Turn:
        return self._append(Turn(role=Role.USER, content=content))

    def append_assistant(self, turn: AssistantTurn) -> Turn:
        return self._append(
            Turn(
                role=Role.ASSISTANT,
                content=turn.text,
                tool_invocations=list(turn.tool_invocations),
            )
        )

    def append_tool_result(self, invocation: ToolInvocation) -> Turn:
        if not invocation.completed:
            raise ConversationError(f"Tool invocation {invocation.id} has no result")
        return self._append(
            Turn(
                role=Role.TOOL,
                content=invocation.result_text or "",
                tool_call_id=invocation.id,
                name=invocation.name,
                outcome=invocation.outcome,
            )
        )

    def _drop_unanswered(self) -> None:
        if not self._pending:
            return
        unanswered = {inv.id for inv in self._pending}
        for index in range(len(self._turns) - 1, -1, -1):
            turn = self._turns[index]
            if turn.role is not Role.ASSISTANT:
                continue
            kept = [inv for inv in turn.tool_invocations if inv.id not in unanswered]
            if kept or turn.content:
                self._turns[index] = turn.model_copy(update={"tool_invocations": kept})
            else:
                del self._turns[index]
            break
        self._pending = []

    def _append(self, turn: Turn) -> Turn:
        if turn.role is Role.TOOL:
            if not self._pending:
                raise ConversationError("Tool result without a pending tool invocation")
            expected = self._pending[0]
            if turn.tool_call_id != expected.id:
                raise ConversationError(
                    f"Expected result for {expected.id}, got {turn.tool_call_id}"
                )
            self._pending.pop(0)
        elif self._pending:
            raise ConversationError(
                f"{len(self._pending)} tool invocation(s) still awaiting results"
            )
        if turn.role is Role.ASSISTANT:
            self._pending = list(turn.tool_invocations)
        self._turns.append(turn)
        return turn
