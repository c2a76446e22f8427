import json
import logging
from typing import Any, Protocol

from openai import AsyncOpenAI

from owl.agent.conversation import AssistantTurn, Conversation, Role, ToolInvocation
from owl.agent.prompts import SYSTEM_PROMPT


logger = logging.getLogger("owl.agent.completion")


class Completion(Protocol):
    """Language-model port: conversation plus tool schema in, next assistant turn out."""

    async def next_turn(
        self, conversation: Conversation, tool_schema: list[dict[str, Any]]
    ) -> AssistantTurn: ...


def to_openai_messages(
    conversation: Conversation, system_prompt: str | None = None
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in conversation.turns:
        if turn.role is Role.TOOL:
            messages.append(
                {"role": "tool", "tool_call_id": turn.tool_call_id, "content": turn.content}
            )
        elif turn.role is Role.ASSISTANT and turn.tool_invocations:
            messages.append(
                {
                    "role": "assistant",
                    "content": turn.content or None,
                    "tool_calls": [
                        {
                            "id": inv.id,
                            "type": "function",
                            "function": {
                                "name": inv.name,
                                "arguments": json.dumps(inv.arguments),
                            },
                        }
                        for inv in turn.tool_invocations
                    ],
                }
            )
        else:
            messages.append({"role": turn.role.value, "content": turn.content})
    return messages


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICompletion:
    """Completion port over OpenAI-compatible chat completions (AI Gateway by default)."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        system_prompt: str = SYSTEM_PROMPT,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.system_prompt = system_prompt
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def next_turn(
        self, conversation: Conversation, tool_schema: list[dict[str, Any]]
    ) -> AssistantTurn:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=to_openai_messages(conversation, self.system_prompt),
            tools=tool_schema,
        )
        choice = completion.choices[0]
        msg = getattr(choice, "message", None)
        text = (getattr(msg, "content", None) or "") if msg else ""
        invocations: list[ToolInvocation] = []
        for call in (getattr(msg, "tool_calls", None) or []) if msg else []:
            fn = getattr(call, "function", None)
            if fn is None:
                continue
            invocations.append(
                ToolInvocation(
                    id=call.id,
                    name=fn.name,
                    arguments=parse_tool_arguments(getattr(fn, "arguments", "{}")),
                )
            )
        logger.debug(
            "next_turn model=%s finish=%s tool_calls=%d",
            self.model,
            getattr(choice, "finish_reason", None),
            len(invocations),
        )
        return AssistantTurn(text=text, tool_invocations=invocations)


class UnconfiguredCompletion:
    """Stand-in used when no API key is configured; every call fails."""

    async def next_turn(
        self, conversation: Conversation, tool_schema: list[dict[str, Any]]
    ) -> AssistantTurn:
        raise RuntimeError(
            "No completion API key configured (set AI_GATEWAY_API_KEY or OPENAI_API_KEY)"
        )
