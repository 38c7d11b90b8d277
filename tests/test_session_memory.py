from __future__ import annotations

import threading
import unittest

from alterego.memory.session_memory import (
    MAX_MESSAGES_PER_SESSION,
    SessionKind,
    SessionStore,
    group_session_key,
    private_session_key,
)


class FakeClock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


class SessionStoreTests(unittest.TestCase):
    def test_private_and_group_keys(self) -> None:
        store = SessionStore()
        private = store.session_for(chat_type="private", chat_id=42, user_id=7, user_name="Alice")
        group = store.session_for(chat_type="supergroup", chat_id=-100, user_id=7, user_name="Alice")
        self.assertEqual(private.key, private_session_key(7, 42))
        self.assertEqual(private.key, "7@42")
        self.assertEqual(group.key, group_session_key(-100))
        self.assertTrue(group.is_group)
        self.assertFalse(private.is_group)
        # Group members share one session.
        other = store.session_for(chat_type="group", chat_id=-100, user_id=8, user_name="Bob")
        self.assertIs(other, group)

    def test_get_session_is_lazy_and_stable(self) -> None:
        store = SessionStore()
        first = store.get_session("custom", kind=SessionKind.PRIVATE, chat_id=9, user_id=9, user_name="Zoe")
        again = store.get_session("custom", kind=SessionKind.GROUP, chat_id=0)
        self.assertIs(first, again)
        self.assertEqual(first.kind, SessionKind.PRIVATE)
        self.assertEqual(store.stats(), {"sessions_count": 1, "total_messages": 0})

    def test_history_keeps_latest_messages_only(self) -> None:
        store = SessionStore()
        session = store.get_private_session(1, "Alice", 1)
        for i in range(MAX_MESSAGES_PER_SESSION + 5):
            store.append_user_message(session, f"m{i}")
        contents = [m["content"] for m in store.to_prompt_messages(session)]
        self.assertEqual(len(contents), MAX_MESSAGES_PER_SESSION)
        self.assertEqual(contents[0], "m5")
        self.assertEqual(contents[-1], f"m{MAX_MESSAGES_PER_SESSION + 4}")

    def test_group_messages_are_attributed(self) -> None:
        store = SessionStore()
        session = store.get_group_session(-5)
        store.append_user_message(session, "hi", sender_id=3, sender_name="Alice")
        store.append_assistant_message(session, "hello Alice")
        self.assertEqual(
            store.to_prompt_messages(session),
            [
                {"role": "user", "content": "[Alice]: hi"},
                {"role": "assistant", "content": "hello Alice"},
            ],
        )

    def test_private_messages_are_not_prefixed(self) -> None:
        store = SessionStore()
        session = store.get_private_session(1, "Alice", 1)
        store.append_user_message(session, "hi", sender_id=1, sender_name="Alice")
        self.assertEqual(store.to_prompt_messages(session), [{"role": "user", "content": "hi"}])

    def test_clear_and_stats(self) -> None:
        store = SessionStore()
        a = store.get_private_session(1, "Alice", 1)
        b = store.get_group_session(-2)
        store.append_user_message(a, "one")
        store.append_user_message(a, "two")
        store.append_user_message(b, "three", sender_id=2, sender_name="Bob")
        self.assertEqual(store.stats(), {"sessions_count": 2, "total_messages": 3})
        store.clear(a)
        self.assertEqual(store.stats(), {"sessions_count": 2, "total_messages": 1})

    def test_prune_idle_drops_stale_sessions(self) -> None:
        clock = FakeClock()
        store = SessionStore(now_ms=clock)
        stale = store.get_private_session(1, "Alice", 1)
        clock.now += 10_000
        fresh = store.get_private_session(2, "Bob", 2)
        store.append_user_message(fresh, "still here")
        removed = store.prune_idle(5_000)
        self.assertEqual(removed, 1)
        self.assertEqual(store.stats()["sessions_count"], 1)
        self.assertIsNot(store.get_private_session(1, "Alice", 1), stale)

    def test_stats_can_be_read_from_another_thread(self) -> None:
        store = SessionStore()
        errors: list[BaseException] = []
        done = threading.Event()

        def read_stats() -> None:
            while not done.is_set():
                try:
                    store.stats()
                except RuntimeError as exc:
                    errors.append(exc)
                    return

        reader = threading.Thread(target=read_stats)
        reader.start()
        try:
            for chat_id in range(5_000):
                store.append_user_message(store.get_group_session(-chat_id), "hi", sender_id=1, sender_name="Alice")
                if chat_id % 100 == 0:
                    store.prune_idle(10**9)
        finally:
            done.set()
            reader.join(timeout=5)
        self.assertEqual(errors, [])
        self.assertEqual(store.stats(), {"sessions_count": 5_000, "total_messages": 5_000})


if __name__ == "__main__":
    unittest.main()
