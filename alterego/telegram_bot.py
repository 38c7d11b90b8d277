"""Telegram bot using python-telegram-bot: routing, silent recording, and streamed replies."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

from telegram import Bot, BotCommand, Message, MessageEntity, ReplyParameters, Update
from telegram.constants import ChatType, ParseMode
from telegram.error import BadRequest, Forbidden
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from alterego.config import BotConfig
from alterego.format import format_message, format_name, html_to_plain, to_telegram_html
from alterego.memory.long_term_memory import LongTermMemoryStore
from alterego.memory.session_memory import Session, SessionStore
from alterego.reply import (
    MessageNotModifiedError,
    RecipientBlockedError,
    ReplyCoordinator,
    ReplyTarget,
    TransportError,
)
from alterego.talkative import TalkativeResponder

log = logging.getLogger(__name__)

SESSION_SWEEP_INTERVAL_SECONDS = 3600
MS_PER_DAY = 86_400_000

GREETING = "🤖 Hello. Hello. I am Alter Ego! I'm a Chat Bot. You can say \"Hi\" with me."
HELP_TEXT = (
    "/start - say hello\n"
    "/help - this list\n"
    "/memory - conversation memory stats\n"
    "/memories - what I remember about you\n"
    "/clear - forget this private conversation"
)


class TelegramReplyTarget(ReplyTarget):
    """Placeholder message in one chat, sent once and then edited in place."""

    def __init__(self, bot: Bot, chat_id: int, *, reply_to_message_id: int | None = None) -> None:
        self._bot = bot
        self._chat_id = chat_id
        self._reply_to_message_id = reply_to_message_id
        self.message: Message | None = None

    async def send(self, text: str) -> None:
        reply_parameters = (
            ReplyParameters(message_id=self._reply_to_message_id)
            if self._reply_to_message_id is not None
            else None
        )
        self.message = await self._deliver(
            self._bot.send_message,
            text,
            chat_id=self._chat_id,
            reply_parameters=reply_parameters,
        )

    async def edit(self, text: str) -> None:
        if self.message is None:
            raise TransportError("Cannot edit message: placeholder was never sent")
        await self._deliver(
            self._bot.edit_message_text,
            text,
            chat_id=self.message.chat_id,
            message_id=self.message.message_id,
        )

    async def _deliver(self, method: Callable[..., Awaitable[Any]], text: str, **kwargs: Any) -> Any:
        try:
            try:
                return await method(text=text, parse_mode=ParseMode.HTML, **kwargs)
            except BadRequest as exc:
                if "can't parse entities" not in exc.message.lower():
                    raise
                log.warning("[REPLY] Telegram rejected the markup (%s); sending plain text", exc.message)
                return await method(text=html_to_plain(text), **kwargs)
        except Forbidden as exc:
            raise RecipientBlockedError(exc.message) from exc
        except BadRequest as exc:
            if "message is not modified" in exc.message.lower():
                raise MessageNotModifiedError(exc.message) from exc
            raise


class TelegramBot:
    def __init__(
        self,
        config: BotConfig,
        *,
        sessions: SessionStore,
        memories: LongTermMemoryStore,
        coordinator: ReplyCoordinator,
        talkative: TalkativeResponder | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._memories = memories
        self._coordinator = coordinator
        self._talkative = talkative
        self._background: set[asyncio.Task[object]] = set()
        self._app: Application | None = None

    def build_application(self) -> Application:
        self._app = (
            Application.builder()
            .token(self._config.telegram_bot_token)
            .concurrent_updates(True)
            .post_init(self._post_init)
            .post_stop(self._post_stop)
            .build()
        )
        self._setup_handlers()
        return self._app

    def run(self) -> None:
        app = self._app or self.build_application()
        app.run_polling(drop_pending_updates=False, allowed_updates=Update.ALL_TYPES)

    async def _post_init(self, app: Application) -> None:
        await app.bot.set_my_commands(
            [
                BotCommand("start", "Say hello"),
                BotCommand("help", "Show commands"),
                BotCommand("memory", "Conversation memory stats"),
                BotCommand("memories", "What I remember about you"),
                BotCommand("clear", "Forget this private conversation"),
            ]
        )
        if self._memories.persistent:
            self._spawn(self._memories.load_from_durable_store())
        if self._config.session_idle_days > 0:
            self._spawn(self._sweep_sessions(self._config.session_idle_days * MS_PER_DAY))

    async def _post_stop(self, app: Application) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self._memories.flush()
        await self._coordinator.aclose()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sweep_sessions(self, max_idle_ms: int) -> None:
        while True:
            await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
            self._sessions.prune_idle(max_idle_ms)

    def _setup_handlers(self) -> None:
        assert self._app is not None
        self._app.add_handler(CommandHandler("start", self._cmd_start))
        self._app.add_handler(CommandHandler("help", self._cmd_help))
        self._app.add_handler(CommandHandler("memory", self._cmd_memory))
        self._app.add_handler(CommandHandler("memories", self._cmd_memories))
        self._app.add_handler(CommandHandler("clear", self._cmd_clear))
        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text))
        self._app.add_error_handler(self._on_error)

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        log.error("Unhandled error while processing update: %s", context.error, exc_info=context.error)

    async def _reply_text(self, update: Update, text: str) -> None:
        if update.effective_message is None:
            return
        await update.effective_message.reply_text(to_telegram_html(text), parse_mode=ParseMode.HTML)

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply_text(update, GREETING)

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply_text(update, HELP_TEXT)

    async def _cmd_memory(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        stats = self._sessions.stats()
        await self._reply_text(
            update,
            "📊 Memory Stats:\n"
            f"• Active sessions: {stats['sessions_count']}\n"
            f"• Total messages: {stats['total_messages']}\n\n"
            "I remember the latest messages of our conversations! 💭",
        )

    async def _cmd_memories(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None:
            return
        memories = self._memories.get_memories(user.id)
        if not self._memories.persistent:
            sync = "memory-only (no database configured)"
        elif self._memories.ready:
            sync = "synchronized with database"
        else:
            sync = "not synchronized with database yet"
        if not memories:
            body = "I don't remember anything about you yet."
        else:
            body = "\n".join(f"{i}. {item.text}" for i, item in enumerate(memories, start=1))
        await self._reply_text(update, f"🧠 Long-term memory ({sync}):\n\n{body}")

    async def _cmd_clear(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        user = update.effective_user
        if chat is None or user is None:
            return
        if chat.type != ChatType.PRIVATE:
            await self._reply_text(update, "/clear only works in private chats.")
            return
        session = self._sessions.get_private_session(user.id, format_name(user), chat.id)
        self._sessions.clear(session)
        await self._reply_text(update, "🧹 Our conversation history is cleared.")

    def _is_addressed(self, message: Message, bot: Bot) -> bool:
        """True when the message mentions the bot or replies to one of its messages."""
        username = (bot.username or "").lower()
        if username:
            for mention in message.parse_entities([MessageEntity.MENTION]).values():
                if mention.lower() == f"@{username}":
                    return True
        replied = message.reply_to_message
        return bool(replied and replied.from_user and replied.from_user.id == bot.id)

    async def _handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        user = update.effective_user
        if message is None or chat is None or not message.text:
            return
        text = format_message(message)
        user_id = user.id if user else 0
        user_name = format_name(user)
        session = self._sessions.session_for(
            chat_type=chat.type, chat_id=chat.id, user_id=user_id, user_name=user_name
        )

        if chat.type == ChatType.PRIVATE or self._is_addressed(message, context.bot):
            await self._reply_with_ai(message, context.bot, session, text, user_id, user_name)
            return

        # Unaddressed group messages are only remembered, so later replies have context.
        self._sessions.append_user_message(session, text, sender_id=user_id, sender_name=user_name)
        log.info("[SILENT] %s (%s) in %s: %s", user_name, user_id, chat.title or "group", text)

        if self._talkative is None:
            return
        decision = self._talkative.decide(message.text)
        if not decision.should_reply or decision.reply is None:
            return
        if self._config.talkative_mode == "ai":
            await self._reply_with_ai(message, context.bot, session, text, user_id, user_name, record_user=False)
        else:
            await self._reply_canned(message, context.bot, session, decision.reply)

    async def _reply_with_ai(
        self,
        message: Message,
        bot: Bot,
        session: Session,
        text: str,
        user_id: int,
        user_name: str,
        *,
        record_user: bool = True,
    ) -> None:
        quote = "@" in (message.text or "") or message.reply_to_message is not None
        target = TelegramReplyTarget(
            bot, message.chat_id, reply_to_message_id=message.message_id if quote else None
        )
        await self._coordinator.reply(
            target=target,
            session=session,
            text=text,
            user_id=user_id,
            user_name=user_name,
            chat_type=message.chat.type,
            record_user=record_user,
        )

    async def _reply_canned(self, message: Message, bot: Bot, session: Session, reply: str) -> None:
        target = TelegramReplyTarget(bot, message.chat_id, reply_to_message_id=message.message_id)
        try:
            await target.send(to_telegram_html(reply))
        except RecipientBlockedError as exc:
            log.warning("[Talkative] Could not reply in chat %s: %s", message.chat_id, exc)
            return
        self._sessions.append_assistant_message(session, reply)
        log.info("[Talkative] Replied in chat %s: %s", message.chat_id, reply)
