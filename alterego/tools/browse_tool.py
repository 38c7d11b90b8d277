"""Fetch a webpage as text through the Jina reader."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from alterego.tools.base import BaseTool, ToolExecutionResult

JINA_READER_URL = "https://r.jina.ai/"
REQUEST_TIMEOUT_SECONDS = 15
CHARS_PER_TOKEN = 2.5


def truncate_for_model(content: str, max_tokens: int) -> str:
    max_chars = int(max_tokens * CHARS_PER_TOKEN)
    if len(content) <= max_chars:
        return content
    return f"{content[:max_chars]}\n\n[Content truncated due to length limit]"


async def fetch_text(url: str, *, headers: dict[str, str], params: dict[str, str] | None = None) -> tuple[int, str, str]:
    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url, headers=headers, params=params) as resp:
            return resp.status, resp.reason or "", await resp.text()


class BrowseTool(BaseTool):
    name = "browse"
    description = "Browse and fetch webpage content"
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "The URL of the webpage"},
        },
        "required": ["url"],
    }

    def __init__(self, *, max_tokens: int = 16000, jina_api_token: str = "") -> None:
        self._max_tokens = max_tokens
        self._jina_api_token = jina_api_token

    async def execute(self, payload: dict[str, Any]) -> ToolExecutionResult:
        url = str(payload.get("url") or "").strip()
        if not url:
            return ToolExecutionResult(ok=False, output="Failed to fetch webpage content. ERROR: missing url")
        headers = {"X-Retain-Images": "none"}
        if self._jina_api_token:
            headers["Authorization"] = f"Bearer {self._jina_api_token}"
        try:
            status, reason, content = await fetch_text(f"{JINA_READER_URL}{url}", headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return ToolExecutionResult(ok=False, output=f"Failed to fetch webpage content. ERROR: {str(exc) or type(exc).__name__}")
        if status >= 400:
            return ToolExecutionResult(ok=False, output=f"Failed to fetch webpage: {status} {reason} ({url})")
        return ToolExecutionResult(ok=True, output=truncate_for_model(content, self._max_tokens))
