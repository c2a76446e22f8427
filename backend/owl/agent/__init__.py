from owl.agent.completion import Completion, OpenAICompletion
from owl.agent.conversation import (
    AssistantTurn,
    Conversation,
    Role,
    ToolInvocation,
    ToolOutcome,
    Turn,
)
from owl.agent.loop import ChatOutcome, ConversationDriver, StopReason
from owl.agent.tools import TOOL_SCHEMA, ToolExecutor, ToolName


__all__ = [
    "AssistantTurn",
    "ChatOutcome",
    "Completion",
    "Conversation",
    "ConversationDriver",
    "OpenAICompletion",
    "Role",
    "StopReason",
    "TOOL_SCHEMA",
    "ToolExecutor",
    "ToolInvocation",
    "ToolName",
    "ToolOutcome",
    "Turn",
]
