from __future__ import annotations

import asyncio
import unittest
from typing import Any, AsyncGenerator

from alterego.llm import StreamEvent, StreamEventType
from alterego.memory.long_term_memory import LongTermMemoryStore
from alterego.memory.session_memory import SessionStore
from alterego.reply import (
    CONNECTING_TEXT,
    ERROR_TEXT,
    RecipientBlockedError,
    ReplyCoordinator,
    ReplyState,
    ReplyTarget,
)
from alterego.tools.registry import ToolRegistry


class FakeTarget(ReplyTarget):
    def __init__(self, *, block_edits: bool = False, block_on: str | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.block_edits = block_edits
        # Edits showing exactly this text fail as if the user had just blocked the bot.
        self.block_on = block_on

    async def send(self, text: str) -> None:
        self.calls.append(("send", text))

    async def edit(self, text: str) -> None:
        if self.block_edits or text == self.block_on:
            raise RecipientBlockedError("Forbidden: bot was blocked by the user")
        self.calls.append(("edit", text))

    @property
    def shown(self) -> str:
        return self.calls[-1][1] if self.calls else ""


def text(value: str) -> StreamEvent:
    return StreamEvent(StreamEventType.TEXT_DELTA, text=value)


class FakeCompletion:
    """Replays scripted events, yielding to the loop between them."""

    def __init__(self, events: list[StreamEvent], *, error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.requests: list[list[dict[str, Any]]] = []
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def stream(self, messages: list[dict[str, Any]], tools: ToolRegistry | None = None) -> AsyncGenerator[StreamEvent, None]:
        self.requests.append(messages)
        for event in self.events:
            yield event
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error


class RememberingCompletion(FakeCompletion):
    """Calls the remember tool before answering, like a model would."""

    async def stream(self, messages: list[dict[str, Any]], tools: ToolRegistry | None = None) -> AsyncGenerator[StreamEvent, None]:
        assert tools is not None
        args = '{"text": "likes tea"}'
        yield StreamEvent(StreamEventType.TOOL_CALL_DELTA, tool_name="remember", args=args)
        yield StreamEvent(StreamEventType.TOOL_CALL, tool_name="remember", args=args)
        result = await tools.execute("remember", args)
        yield StreamEvent(StreamEventType.TOOL_RESULT, tool_name="remember", text=result)
        yield text("Noted!")


class ReplyCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.sessions = SessionStore()
        self.memories = LongTermMemoryStore()
        self.session = self.sessions.get_private_session(7, "Alice", 7)

    def coordinator(self, completion: FakeCompletion) -> ReplyCoordinator:
        return ReplyCoordinator(
            sessions=self.sessions,
            memories=self.memories,
            completion=completion,  # type: ignore[arg-type]
            interval=0.0,
        )

    async def run_turn(self, completion: FakeCompletion, target: FakeTarget, message: str = "hello") -> ReplyState:
        turn = await self.coordinator(completion).reply(
            target=target,
            session=self.session,
            text=message,
            user_id=7,
            user_name="Alice",
            chat_type="private",
        )
        return turn.state

    async def test_streamed_reply_ends_with_full_text(self) -> None:
        target = FakeTarget()
        state = await self.run_turn(FakeCompletion([text("Hi"), text(" there")]), target)

        self.assertEqual(state, ReplyState.DONE)
        self.assertEqual(target.calls[0], ("send", CONNECTING_TEXT))
        self.assertEqual([kind for kind, _ in target.calls].count("send"), 1)
        self.assertEqual(target.shown, "Hi there")
        self.assertEqual(
            self.sessions.to_prompt_messages(self.session),
            [
                {"role": "user", "content": "hello"},
                {"role": "assistant", "content": "Hi there"},
            ],
        )

    async def test_prompt_has_persona_memory_then_history(self) -> None:
        self.memories.remember(7, "likes tea")
        completion = FakeCompletion([text("ok")])
        await self.run_turn(completion, FakeTarget())

        messages = completion.requests[0]
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("Alice", messages[0]["content"])
        self.assertEqual(messages[1], {"role": "user", "content": "Memory of Alice:\n\n1. likes tea"})
        self.assertEqual(messages[2], {"role": "user", "content": "hello"})

    async def test_failure_keeps_partial_output(self) -> None:
        target = FakeTarget()
        completion = FakeCompletion([text("Partial")], error=RuntimeError("upstream closed"))
        state = await self.run_turn(completion, target)

        expected = f"🟢 Typing...\n\nPartial...\n\n{ERROR_TEXT}"
        self.assertEqual(state, ReplyState.FAILED)
        self.assertEqual(target.shown, expected)
        recorded = self.sessions.to_prompt_messages(self.session)[-1]
        self.assertEqual(recorded["role"], "assistant")
        self.assertEqual(
            recorded["content"],
            f"{expected}\n\nAlter Ego System Error Log: RuntimeError: upstream closed",
        )

    async def test_failure_before_output_shows_apology_only(self) -> None:
        target = FakeTarget()
        state = await self.run_turn(FakeCompletion([], error=RuntimeError("401")), target)
        self.assertEqual(state, ReplyState.FAILED)
        self.assertEqual(target.shown, ERROR_TEXT)

    async def test_blocked_recipient_aborts_silently(self) -> None:
        target = FakeTarget(block_edits=True)
        completion = FakeCompletion([text("Hel"), text("lo"), text(" there"), text("!")])
        state = await self.run_turn(completion, target)

        self.assertEqual(state, ReplyState.ABORTED)
        self.assertEqual(target.calls, [("send", CONNECTING_TEXT)])
        self.assertEqual(
            self.sessions.to_prompt_messages(self.session),
            [{"role": "user", "content": "hello"}],
        )

    async def test_blocked_on_final_text_records_no_answer(self) -> None:
        target = FakeTarget(block_on="Hi there")
        state = await self.run_turn(FakeCompletion([text("Hi"), text(" there")]), target)

        self.assertEqual(state, ReplyState.ABORTED)
        self.assertNotIn(("edit", "Hi there"), target.calls)
        self.assertEqual(
            self.sessions.to_prompt_messages(self.session),
            [{"role": "user", "content": "hello"}],
        )

    async def test_blocked_on_error_notice_records_no_error_log(self) -> None:
        notice = f"🟢 Typing...\n\nPartial...\n\n{ERROR_TEXT}"
        target = FakeTarget(block_on=notice)
        completion = FakeCompletion([text("Partial")], error=RuntimeError("upstream closed"))
        state = await self.run_turn(completion, target)

        self.assertEqual(state, ReplyState.ABORTED)
        self.assertNotEqual(target.shown, notice)
        self.assertEqual(
            self.sessions.to_prompt_messages(self.session),
            [{"role": "user", "content": "hello"}],
        )

    async def test_tool_turn_is_marked_done_working(self) -> None:
        target = FakeTarget()
        state = await self.run_turn(RememberingCompletion([]), target)

        self.assertEqual(state, ReplyState.DONE)
        self.assertEqual(target.shown, "☑️ Done working\nNoted!")
        self.assertEqual([m.text for m in self.memories.get_memories(7)], ["likes tea"])

    async def test_silent_group_turn_does_not_repeat_user_message(self) -> None:
        group = self.sessions.get_group_session(-1)
        self.sessions.append_user_message(group, "是不是要下雨了", sender_id=3, sender_name="Bob")
        await self.coordinator(FakeCompletion([text("可能吧")])).reply(
            target=FakeTarget(),
            session=group,
            text="是不是要下雨了",
            user_id=3,
            user_name="Bob",
            chat_type="group",
            record_user=False,
        )
        self.assertEqual(
            self.sessions.to_prompt_messages(group),
            [
                {"role": "user", "content": "[Bob]: 是不是要下雨了"},
                {"role": "assistant", "content": "可能吧"},
            ],
        )

    async def test_aclose_closes_completion_client(self) -> None:
        completion = FakeCompletion([])
        await self.coordinator(completion).aclose()
        self.assertTrue(completion.closed)


if __name__ == "__main__":
    unittest.main()
