"""Alter Ego runtime entry point."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv

from alterego.config import ConfigError, load_config
from alterego.health.server import HealthServer
from alterego.llm import CompletionClient
from alterego.memory.engine import MemoryEngine
from alterego.memory.long_term_memory import LongTermMemoryStore, MemoryRepository
from alterego.memory.session_memory import SessionStore
from alterego.reply import ReplyCoordinator
from alterego.talkative import TalkativeResponder
from alterego.telegram_bot import TelegramBot
from alterego.tools.browse_tool import BrowseTool
from alterego.tools.registry import ToolRegistry
from alterego.tools.search_tool import SearchTool

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Alter Ego Telegram bot")
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML config file; environment variables override it",
    )
    return parser


def main() -> int:
    args = build_parser().parse_args()
    load_dotenv()
    try:
        config = load_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s :: %(message)s",
    )
    # Polling requests would drown the bot's own log lines.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    memory_engine: MemoryEngine | None = None
    repository: MemoryRepository | None = None
    if config.database_path is not None:
        memory_engine = MemoryEngine(config.database_path)
        memory_engine.initialize()
        repository = MemoryRepository(memory_engine.connect())
    else:
        log.warning("[MEMORY] DATABASE_PATH is not set; long-term memory lives in memory only")

    sessions = SessionStore()
    memories = LongTermMemoryStore(capacity=config.memory_max_count, repository=repository)

    tools = ToolRegistry()
    if config.search_enabled:
        tools.register(SearchTool(max_tokens=config.browse_max_tokens, jina_api_token=config.jina_api_token))
    if config.browse_enabled:
        tools.register(BrowseTool(max_tokens=config.browse_max_tokens, jina_api_token=config.jina_api_token))

    completion = CompletionClient(
        config.llm_api_key,
        base_url=config.llm_base_url,
        model=config.llm_default_model,
        max_steps=config.llm_max_steps,
    )
    coordinator = ReplyCoordinator(
        sessions=sessions,
        memories=memories,
        completion=completion,
        tools=tools,
        verbose=config.verbose,
    )
    talkative = (
        TalkativeResponder(probability_override=config.talkative_probability)
        if config.talkative_enabled
        else None
    )

    health_server: HealthServer | None = None
    if config.health_port:
        health_server = HealthServer(
            host="0.0.0.0",
            port=config.health_port,
            sessions=sessions,
            memories=memories,
            model=completion.model,
        )
        health_server.start()

    telegram_bot = TelegramBot(
        config,
        sessions=sessions,
        memories=memories,
        coordinator=coordinator,
        talkative=talkative,
    )
    log.info(
        "[BOOT] Alter Ego starting with model %s, tools: %s",
        completion.model,
        ", ".join(tools.list_tools()) or "none",
    )
    try:
        telegram_bot.run()
    finally:
        if health_server is not None:
            health_server.stop()
        if memory_engine is not None:
            memory_engine.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
