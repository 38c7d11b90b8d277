"""Long-term per-user memory with an optional SQLite mirror."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

log = logging.getLogger(__name__)

DEFAULT_MAX_MEMORY_COUNT = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MemoryItem:
    text: str


class MemoryRepository:
    """Durable copy of each user's notes, one row per user holding a JSON array."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def upsert(self, user_id: int, texts: list[str], now_ms: int) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO memory (id, user_id, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    content=excluded.content,
                    updated_at=excluded.updated_at
                """,
                (uuid.uuid4().hex, user_id, json.dumps(texts, ensure_ascii=False), now_ms, now_ms),
            )
            self._conn.commit()

    def load_all(self) -> list[tuple[int, list[str]]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT user_id, content FROM memory ORDER BY updated_at ASC"
            ).fetchall()
        out: list[tuple[int, list[str]]] = []
        for row in rows:
            try:
                content = json.loads(row["content"])
            except (TypeError, json.JSONDecodeError):
                log.warning("[MEMORY] Skipping unreadable memory row for user %s", row["user_id"])
                continue
            if not isinstance(content, list):
                log.warning("[MEMORY] Skipping non-list memory row for user %s", row["user_id"])
                continue
            out.append((int(row["user_id"]), [str(item) for item in content]))
        return out

    def get(self, user_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, user_id, content, created_at, updated_at FROM memory WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["content"] = json.loads(item["content"])
        return item


class LongTermMemoryStore:
    """Bounded FIFO notes per user.

    The in-memory map is what every read sees. When a repository is configured,
    each mutation is mirrored to it in the background and failures are only
    logged; the repository is read once, at startup.
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_MAX_MEMORY_COUNT,
        repository: MemoryRepository | None = None,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._capacity = capacity
        self._repository = repository
        self._now_ms = now_ms
        self._memories: dict[int, list[str]] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._ready = False
        # Users whose notes changed before the durable copy was loaded.
        self._unsynced: set[int] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def persistent(self) -> bool:
        return self._repository is not None

    @property
    def ready(self) -> bool:
        """True once the durable store has been loaded successfully."""
        return self._ready

    def get_memories(self, user_id: int) -> list[MemoryItem]:
        return [MemoryItem(text) for text in self._memories.get(user_id, [])]

    def remember(self, user_id: int, text: str) -> None:
        memories = self._memories.setdefault(user_id, [])
        memories.append(text)
        if len(memories) > self._capacity:
            del memories[: len(memories) - self._capacity]
        log.info("[MEMORY] Remembered note for user %s. Total: %d", user_id, len(memories))
        if self._repository is not None and not self._ready:
            # Writing now would replace stored notes that have not been read yet.
            self._unsynced.add(user_id)
            return
        self._persist(user_id, list(memories))

    def format_for_prompt(self, user_id: int, display_name: str) -> dict[str, str] | None:
        memories = self._memories.get(user_id)
        if not memories:
            return None
        lines = "\n\n".join(f"{i}. {text}" for i, text in enumerate(memories, start=1))
        return {"role": "user", "content": f"Memory of {display_name or 'User'}:\n\n{lines}"}

    async def load_from_durable_store(self) -> bool:
        if self._repository is None:
            return False
        try:
            rows = await asyncio.to_thread(self._repository.load_all)
        except (sqlite3.Error, ValueError):
            log.exception("[MEMORY] Failed to load long-term memory; continuing memory-only")
            return False
        for user_id, texts in rows:
            # Notes remembered before the load finished are newer than anything stored.
            merged = texts + self._memories.get(user_id, [])
            self._memories[user_id] = merged[-self._capacity :]
        self._ready = True
        for user_id in sorted(self._unsynced):
            self._persist(user_id, list(self._memories.get(user_id, [])))
        self._unsynced.clear()
        log.info("[MEMORY] Loaded long-term memory for %d users", len(rows))
        return True

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _persist(self, user_id: int, texts: list[str]) -> None:
        if self._repository is None:
            return
        now = self._now_ms()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(user_id, texts, now)
            return
        task = loop.create_task(asyncio.to_thread(self._write, user_id, texts, now))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _write(self, user_id: int, texts: list[str], now_ms: int) -> None:
        assert self._repository is not None
        try:
            self._repository.upsert(user_id, texts, now_ms)
        except sqlite3.Error:
            log.exception("[MEMORY] Failed to persist long-term memory for user %s", user_id)
