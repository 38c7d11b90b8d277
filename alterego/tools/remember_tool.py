"""Per-turn tool that stores a note in the caller's long-term memory."""

from __future__ import annotations

from typing import Any

from alterego.memory.long_term_memory import LongTermMemoryStore
from alterego.tools.base import BaseTool, ToolExecutionResult


class RememberTool(BaseTool):
    name = "remember"
    description = "store a piece of information into long-term memory"
    parameters = {
        "type": "object",
        "properties": {
            "text": {"type": "string", "description": "the information to be remembered"},
        },
        "required": ["text"],
    }

    def __init__(self, store: LongTermMemoryStore, user_id: int) -> None:
        self._store = store
        self._user_id = user_id

    async def execute(self, payload: dict[str, Any]) -> ToolExecutionResult:
        text = str(payload.get("text") or "").strip()
        if not text:
            return ToolExecutionResult(ok=False, output="Nothing to remember: 'text' is empty.")
        self._store.remember(self._user_id, text)
        return ToolExecutionResult(ok=True, output="Got it! I've remembered.")
