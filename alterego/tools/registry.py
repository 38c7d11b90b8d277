"""Tool registry: declares tools to the model and dispatches its calls."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from alterego.tools.base import BaseTool

log = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def count(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        return sorted(self._tools.keys())

    def specs(self) -> list[dict[str, Any]]:
        return [self._tools[name].spec() for name in self.list_tools()]

    def with_tools(self, *extra: BaseTool) -> ToolRegistry:
        """Copy of this registry with per-turn tools added."""
        return ToolRegistry([*self._tools.values(), *extra])

    async def execute(self, tool_name: str, arguments: str | dict[str, Any] | None) -> str:
        """Run a tool call and return the text handed back to the model.

        Unknown tools, malformed arguments and tool exceptions all become
        descriptive strings so the completion loop can carry on.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            return f"Unknown tool: {tool_name}"

        if isinstance(arguments, dict):
            payload = arguments
        else:
            try:
                payload = json.loads(arguments) if arguments else {}
            except json.JSONDecodeError as exc:
                return f"Invalid arguments for {tool_name}: {exc}"
            if not isinstance(payload, dict):
                return f"Invalid arguments for {tool_name}: expected a JSON object"

        try:
            result = await tool.execute(payload)
        except Exception as exc:  # noqa: BLE001
            log.exception("[TOOL] %s raised", tool_name)
            return f"Failed to run {tool_name}. ERROR: {exc}"

        if not result.ok:
            log.warning("[TOOL] %s failed: %s", tool_name, result.output[:200])
        return result.output
