"""Web search through the Jina search endpoint (titles and URLs only)."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from alterego.tools.base import BaseTool, ToolExecutionResult
from alterego.tools.browse_tool import fetch_text, truncate_for_model

JINA_SEARCH_URL = "https://s.jina.ai/"


class SearchTool(BaseTool):
    name = "search"
    description = "Search the web and return the titles and URLs of matching pages, one page of results per call."
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "plain text, The thing you want to search for"},
        },
        "required": ["query"],
    }

    def __init__(self, *, max_tokens: int = 16000, jina_api_token: str = "") -> None:
        self._max_tokens = max_tokens
        self._jina_api_token = jina_api_token

    async def execute(self, payload: dict[str, Any]) -> ToolExecutionResult:
        query = str(payload.get("query") or "").strip()
        if not query:
            return ToolExecutionResult(ok=False, output="Failed to perform search. ERROR: missing query")
        headers = {"X-Respond-With": "no-content"}
        if self._jina_api_token:
            headers["Authorization"] = f"Bearer {self._jina_api_token}"
        try:
            status, reason, content = await fetch_text(JINA_SEARCH_URL, headers=headers, params={"q": query})
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return ToolExecutionResult(ok=False, output=f"Failed to perform search. ERROR: {str(exc) or type(exc).__name__}")
        if status >= 400:
            return ToolExecutionResult(ok=False, output=f"Failed to search: {status} {reason}")
        body = truncate_for_model(content, self._max_tokens)
        return ToolExecutionResult(
            ok=True,
            output=f"{body}\n\nThe above result is only visible to you. Reference only.\nUse it to answer or make the next plan.",
        )
