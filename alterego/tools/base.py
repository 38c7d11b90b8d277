"""Base interface for tools the model can call."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ToolExecutionResult:
    ok: bool
    output: str


class BaseTool(ABC):
    name: str
    description: str
    parameters: dict[str, Any]

    def spec(self) -> dict[str, Any]:
        """OpenAI-style function declaration for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @abstractmethod
    async def execute(self, payload: dict[str, Any]) -> ToolExecutionResult:
        """Run tool with decoded arguments. Failures come back as ok=False, never raised."""
