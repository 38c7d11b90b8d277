"""OpenAI-compatible streaming chat completions with a bounded tool-calling loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator

from openai import AsyncOpenAI

from alterego.tools.registry import ToolRegistry

log = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10


class StreamEventType(str, Enum):
    TEXT_DELTA = "text-delta"
    TOOL_CALL_DELTA = "tool-call-delta"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"


@dataclass(frozen=True)
class StreamEvent:
    type: StreamEventType
    text: str = ""
    tool_name: str = ""
    args: str = ""


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class CompletionClient:
    """Streams one reply, running tool calls between steps.

    Each step is one streamed request. When a step ends with tool calls, the
    calls are executed through the registry, their results are appended to the
    conversation and the next step starts; at most ``max_steps`` steps run.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        model: str,
        max_steps: int = DEFAULT_MAX_STEPS,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._max_steps = max(1, max_steps)

    @property
    def model(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.close()

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: ToolRegistry | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        conversation: list[dict[str, Any]] = list(messages)
        specs = tools.specs() if tools is not None else []

        for step in range(self._max_steps):
            request: dict[str, Any] = {"model": self._model, "messages": conversation, "stream": True}
            if specs:
                request["tools"] = specs
            response = await self._client.chat.completions.create(**request)

            text_parts: list[str] = []
            calls: dict[int, _PendingToolCall] = {}
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                # Reasoning-only deltas arrive with empty content.
                if delta.content is not None or getattr(delta, "reasoning", None):
                    text = delta.content or ""
                    if text:
                        text_parts.append(text)
                    yield StreamEvent(StreamEventType.TEXT_DELTA, text=text)
                for call_delta in delta.tool_calls or []:
                    pending = calls.setdefault(call_delta.index, _PendingToolCall())
                    if call_delta.id:
                        pending.id = call_delta.id
                    fn = call_delta.function
                    fragment = ""
                    if fn is not None:
                        if fn.name:
                            pending.name += fn.name
                        if fn.arguments:
                            fragment = fn.arguments
                            pending.arguments += fragment
                    yield StreamEvent(StreamEventType.TOOL_CALL_DELTA, tool_name=pending.name, args=fragment)

            if not calls:
                return

            ordered = [calls[index] for index in sorted(calls)]
            for position, call in enumerate(ordered):
                if not call.id:
                    call.id = f"call_{step}_{position}"
            conversation.append(
                {
                    "role": "assistant",
                    "content": "".join(text_parts) or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments or "{}"},
                        }
                        for call in ordered
                    ],
                }
            )
            for call in ordered:
                log.info("[TOOL] Calling tool: %s with args: %s", call.name, call.arguments)
                yield StreamEvent(StreamEventType.TOOL_CALL, tool_name=call.name, args=call.arguments)
                if tools is None:
                    result = f"Unknown tool: {call.name}"
                else:
                    result = await tools.execute(call.name, call.arguments)
                yield StreamEvent(StreamEventType.TOOL_RESULT, tool_name=call.name, text=result)
                conversation.append({"role": "tool", "tool_call_id": call.id, "content": result})

        log.warning("[LLM] Stopped after %d steps with tool calls still pending", self._max_steps)
