"""Streamed reply coordination.

One turn sends a single placeholder message and keeps editing it while the
completion streams in. Edits are rate limited: at most one transport call is in
flight, and values that arrive too early are coalesced into a trailing edit
that always carries the latest text.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from alterego.format import clean_ai_response, to_telegram_html
from alterego.llm import CompletionClient, StreamEvent, StreamEventType
from alterego.memory.long_term_memory import LongTermMemoryStore
from alterego.memory.session_memory import Session, SessionStore
from alterego.prompt import system_prompt
from alterego.tools.registry import ToolRegistry
from alterego.tools.remember_tool import RememberTool

log = logging.getLogger(__name__)

EDIT_MESSAGE_INTERVAL = 1.0
TOOL_ARGS_PREVIEW_CHARS = 32

CONNECTING_TEXT = "🔵 Connecting..."
THINKING_TEXT = "🟢 Thinking..."
TYPING_TEXT = "🟢 Typing..."
WORKING_TEXT = "🟠 Working..."
DONE_WORKING_TEXT = "☑️ Done working"
ERROR_TEXT = "🔴 Something went wrong. I don't know what to say next..."
ERROR_LOG_LABEL = "Alter Ego System Error Log"


class TransportError(Exception):
    """Raised by a reply target when the chat transport rejects a call."""


class MessageNotModifiedError(TransportError):
    """The edit carried the text the message already has."""


class RecipientBlockedError(TransportError):
    """The recipient blocked the bot; nothing more can be delivered."""


class ReplyTarget(ABC):
    """Where a turn's placeholder message lives."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send the placeholder message."""

    @abstractmethod
    async def edit(self, text: str) -> None:
        """Replace the placeholder message text."""


class ReplyState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    THINKING = "thinking"
    WORKING = "working"
    TYPING = "typing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ToolCallRecord:
    tool_name: str
    args: str


def tools_log(tool_calls: list[ToolCallRecord]) -> str:
    lines: list[str] = []
    for call in tool_calls:
        args = call.args
        if len(args) > TOOL_ARGS_PREVIEW_CHARS:
            args = f"{args[:TOOL_ARGS_PREVIEW_CHARS]}..."
        args = args.replace("\n", " ").replace("`", "")
        lines.append(f"⚙️ {call.tool_name} `{args}`")
    return "\n".join(lines)


def render_progress(*, text: str, tool_calls: list[ToolCallRecord], working: bool, thinking: bool) -> str:
    """Status line for an unfinished turn: working > thinking > typing, then the text so far."""
    cleaned = clean_ai_response(text) if text else ""
    if working:
        out = f"{WORKING_TEXT}\n{tools_log(tool_calls)}"
    elif thinking and not cleaned:
        out = THINKING_TEXT
    else:
        out = TYPING_TEXT
    if cleaned:
        out += f"\n\n{cleaned}..."
    return out


class RenderAction(str, Enum):
    SEND = "send"
    EDIT = "edit"
    DEFER = "defer"
    NOOP = "noop"


@dataclass
class RenderState:
    last_rendered: str = ""
    last_sent_at: float | None = None
    has_message: bool = False


def decide_action(
    state: RenderState,
    text: str,
    now: float,
    interval: float = EDIT_MESSAGE_INTERVAL,
) -> tuple[RenderAction, float]:
    """Return what to do with a freshly rendered value, and the delay for DEFER."""
    if not text.strip():
        return RenderAction.NOOP, 0.0
    if not state.has_message:
        return RenderAction.SEND, 0.0
    if text == state.last_rendered:
        return RenderAction.NOOP, 0.0
    elapsed = now - (state.last_sent_at if state.last_sent_at is not None else now - interval)
    if elapsed >= interval:
        return RenderAction.EDIT, 0.0
    return RenderAction.DEFER, interval - elapsed


class ReplyRenderer:
    """Drives one placeholder message under the edit rate limit."""

    def __init__(
        self,
        target: ReplyTarget,
        *,
        interval: float = EDIT_MESSAGE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        render: Callable[[str], str] = to_telegram_html,
    ) -> None:
        self._target = target
        self._interval = interval
        self._clock = clock
        self._render = render
        self._state = RenderState()
        self._latest = ""
        self._inflight: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._error: Exception | None = None
        self.blocked = False

    @property
    def has_message(self) -> bool:
        return self._state.has_message

    @property
    def last_rendered(self) -> str:
        return self._state.last_rendered

    def update(self, text: str) -> None:
        """Offer a new value; it is sent now, later, or not at all."""
        self._raise_pending()
        if self.blocked:
            return
        rendered = self._render(text)
        if not rendered.strip():
            return
        self._latest = rendered
        self._pump()

    async def finish(self, text: str) -> None:
        """Wait out the rate limit and leave the message showing ``text``."""
        while self._inflight is not None:
            await self._inflight
        self._cancel_timer()
        self._raise_pending()
        if self.blocked:
            return
        rendered = self._render(text)
        if not rendered.strip():
            return
        self._latest = rendered
        action, delay = decide_action(self._state, rendered, self._clock(), self._interval)
        if action is RenderAction.NOOP:
            return
        if action is RenderAction.DEFER:
            await asyncio.sleep(delay)
            action = RenderAction.EDIT
        await self._push(action, rendered)
        self._raise_pending()

    def clear_error(self) -> None:
        self._error = None

    def close(self) -> None:
        self._cancel_timer()

    def _pump(self) -> None:
        if self.blocked or self._error is not None or self._inflight is not None:
            return
        action, delay = decide_action(self._state, self._latest, self._clock(), self._interval)
        if action in (RenderAction.SEND, RenderAction.EDIT):
            self._cancel_timer()
            self._inflight = asyncio.get_running_loop().create_task(self._push(action, self._latest))
        elif action is RenderAction.DEFER and self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._pump()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _raise_pending(self) -> None:
        if self._error is not None:
            raise self._error

    async def _push(self, action: RenderAction, value: str) -> None:
        self._state.last_sent_at = self._clock()
        try:
            if action is RenderAction.SEND:
                await self._target.send(value)
                self._state.has_message = True
            else:
                await self._target.edit(value)
            self._state.last_rendered = value
        except MessageNotModifiedError:
            self._state.last_rendered = value
        except RecipientBlockedError as exc:
            log.warning("[REPLY] Recipient blocked the bot: %s", exc)
            self.blocked = True
            self._cancel_timer()
        except Exception as exc:  # noqa: BLE001
            # Surfaced to the turn on the next update/finish.
            self._error = exc
        finally:
            if self._inflight is not None and self._inflight is asyncio.current_task():
                self._inflight = None
        if self._latest != self._state.last_rendered:
            self._pump()


@dataclass
class TurnState:
    state: ReplyState = ReplyState.IDLE
    text_parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    working: bool = False
    thinking: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def apply(self, event: StreamEvent) -> None:
        if event.type is StreamEventType.TEXT_DELTA:
            if event.text:
                self.text_parts.append(event.text)
            else:
                self.thinking = True
        elif event.type is StreamEventType.TOOL_CALL_DELTA:
            self.working = True
        elif event.type is StreamEventType.TOOL_CALL:
            self.working = True
            self.tool_calls.append(ToolCallRecord(event.tool_name, event.args))

        if self.working:
            self.state = ReplyState.WORKING
        elif self.thinking and not clean_ai_response(self.text):
            self.state = ReplyState.THINKING
        else:
            self.state = ReplyState.TYPING

    def progress(self) -> str:
        return render_progress(
            text=self.text,
            tool_calls=self.tool_calls,
            working=self.working,
            thinking=self.thinking,
        )


class ReplyCoordinator:
    """Runs one conversational turn from the inbound text to the recorded reply."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        memories: LongTermMemoryStore,
        completion: CompletionClient,
        tools: ToolRegistry | None = None,
        interval: float = EDIT_MESSAGE_INTERVAL,
        verbose: bool = False,
    ) -> None:
        self._sessions = sessions
        self._memories = memories
        self._completion = completion
        self._tools = tools or ToolRegistry()
        self._interval = interval
        self._verbose = verbose

    async def aclose(self) -> None:
        await self._completion.close()

    def build_messages(self, session: Session, *, user_id: int, user_name: str, chat_type: str | None) -> list[dict[str, str]]:
        """System persona, then long-term memory (if any), then the session history."""
        messages = system_prompt(user_name=user_name, chat_type=chat_type)
        memory_message = self._memories.format_for_prompt(user_id, user_name)
        if memory_message is not None:
            messages.append(memory_message)
        messages.extend(self._sessions.to_prompt_messages(session))
        return messages

    async def reply(
        self,
        *,
        target: ReplyTarget,
        session: Session,
        text: str,
        user_id: int,
        user_name: str,
        chat_type: str | None,
        record_user: bool = True,
    ) -> TurnState:
        turn = TurnState()
        renderer = ReplyRenderer(target, interval=self._interval)
        log.info("[MSG] %s (%s) in %s: %s", user_name, user_id, chat_type, text)
        try:
            turn.state = ReplyState.CONNECTING
            renderer.update(CONNECTING_TEXT)
            if record_user:
                self._sessions.append_user_message(session, text, sender_id=user_id, sender_name=user_name)

            messages = self.build_messages(session, user_id=user_id, user_name=user_name, chat_type=chat_type)
            tools = self._tools.with_tools(RememberTool(self._memories, user_id))

            events = self._completion.stream(messages, tools)
            try:
                async for event in events:
                    turn.apply(event)
                    renderer.update(turn.progress())
                    if renderer.blocked:
                        turn.state = ReplyState.ABORTED
                        return turn
            finally:
                await events.aclose()

            turn.state = ReplyState.FINALIZING
            final_text = clean_ai_response(turn.text)
            log.info("[REPLY] Alter Ego: %s", final_text)
            await renderer.finish(f"{DONE_WORKING_TEXT}\n{final_text}" if turn.working else final_text)
            if renderer.blocked:
                turn.state = ReplyState.ABORTED
                return turn
            self._sessions.append_assistant_message(session, final_text)
            turn.state = ReplyState.DONE
        except Exception as exc:  # noqa: BLE001
            await self._fail(turn, renderer, session, exc)
        finally:
            renderer.close()
            if self._verbose:
                stats = self._sessions.stats()
                log.debug("[MEMORY] Sessions: %s, Total messages: %s", stats["sessions_count"], stats["total_messages"])
        return turn

    async def _fail(self, turn: TurnState, renderer: ReplyRenderer, session: Session, exc: Exception) -> None:
        log.error("[REPLY] Error processing message: %s", exc, exc_info=exc)
        turn.state = ReplyState.FAILED
        has_output = bool(turn.text_parts) or bool(turn.tool_calls)
        if renderer.has_message and has_output:
            shown = f"{turn.progress()}\n\n{ERROR_TEXT}"
        else:
            shown = ERROR_TEXT
        if not renderer.blocked:
            renderer.clear_error()
            try:
                await renderer.finish(shown)
            except Exception:  # noqa: BLE001
                log.exception("[REPLY] Could not deliver the error notice")
        if renderer.blocked:
            turn.state = ReplyState.ABORTED
            return
        # The model sees its own failure in later turns.
        self._sessions.append_assistant_message(
            session, f"{shown}\n\n{ERROR_LOG_LABEL}: {type(exc).__name__}: {exc}"
        )
