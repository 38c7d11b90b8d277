"""Bot configuration loader (YAML file with environment overrides)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-5"
TALKATIVE_MODES = ("canned", "ai")


@dataclass(frozen=True)
class BotConfig:
    telegram_bot_token: str
    llm_api_key: str
    llm_base_url: str = DEFAULT_BASE_URL
    llm_default_model: str = DEFAULT_MODEL
    llm_max_steps: int = 10
    memory_max_count: int = 10
    database_path: Path | None = None
    talkative_enabled: bool = True
    talkative_probability: float = -1.0
    talkative_mode: str = "canned"
    search_enabled: bool = False
    browse_enabled: bool = False
    browse_max_tokens: int = 16000
    jina_api_token: str = ""
    session_idle_days: int = 0
    health_port: int = 0
    verbose: bool = False


class ConfigError(ValueError):
    """Raised when bot configuration is invalid."""


# field name -> environment variable
ENV_KEYS: dict[str, str] = {
    "telegram_bot_token": "TELEGRAM_BOT_TOKEN",
    "llm_api_key": "AI_OPENROUTER_API_KEY",
    "llm_base_url": "AI_OPENROUTER_BASE_URL",
    "llm_default_model": "AI_LLM_DEFAULT_MODEL",
    "llm_max_steps": "AI_LLM_MAX_STEPS",
    "memory_max_count": "AI_MEMORY_MAX_COUNT",
    "database_path": "DATABASE_PATH",
    "talkative_enabled": "TALKATIVE_RANDOM_REPLY_ENABLED",
    "talkative_probability": "TALKATIVE_RANDOM_REPLY_COVERAGE_PROBABILITY",
    "talkative_mode": "TALKATIVE_RANDOM_REPLY_MODE",
    "search_enabled": "SEARCH_ENABLED",
    "browse_enabled": "BROWSE_ENABLED",
    "browse_max_tokens": "BROWSE_MAX_TOKENS",
    "jina_api_token": "JINA_API_TOKEN",
    "session_idle_days": "SESSION_IDLE_DAYS",
    "health_port": "HEALTH_PORT",
    "verbose": "VERBOSE",
}


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raw = str(value).strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"{key} must be a boolean, got '{value}'")


def _parse_int(key: str, value: Any, *, minimum: int = 0) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{value}'") from exc
    if parsed < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {parsed}")
    return parsed


def _parse_probability(key: str, value: Any) -> float:
    try:
        parsed = float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got '{value}'") from exc
    if parsed != -1 and not 0.0 <= parsed <= 1.0:
        raise ConfigError(f"{key} must be between 0.0 and 1.0, or -1 to disable")
    return parsed


def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a mapping: {config_path}")
    unknown = set(raw.keys()).difference(ENV_KEYS.keys())
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    return raw


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BotConfig:
    """Build a BotConfig from an optional YAML file, letting environment variables win."""
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = _read_yaml(config_path) if config_path is not None else {}
    for field_name, env_key in ENV_KEYS.items():
        value = env.get(env_key)
        if value is not None and value != "":
            raw[field_name] = value

    missing = [ENV_KEYS[k] for k in ("telegram_bot_token", "llm_api_key") if not str(raw.get(k) or "").strip()]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    talkative_mode = str(raw.get("talkative_mode", "canned")).strip().lower()
    if talkative_mode not in TALKATIVE_MODES:
        raise ConfigError(f"talkative_mode must be one of: {', '.join(TALKATIVE_MODES)}")

    database_raw = str(raw.get("database_path") or "").strip()

    return BotConfig(
        telegram_bot_token=str(raw["telegram_bot_token"]).strip(),
        llm_api_key=str(raw["llm_api_key"]).strip(),
        llm_base_url=str(raw.get("llm_base_url") or DEFAULT_BASE_URL).strip().rstrip("/"),
        llm_default_model=str(raw.get("llm_default_model") or DEFAULT_MODEL).strip(),
        llm_max_steps=_parse_int("llm_max_steps", raw.get("llm_max_steps", 10), minimum=1),
        memory_max_count=_parse_int("memory_max_count", raw.get("memory_max_count", 10), minimum=1),
        database_path=Path(database_raw).expanduser() if database_raw else None,
        talkative_enabled=_parse_bool("talkative_enabled", raw.get("talkative_enabled", True)),
        talkative_probability=_parse_probability(
            "talkative_probability", raw.get("talkative_probability", -1)
        ),
        talkative_mode=talkative_mode,
        search_enabled=_parse_bool("search_enabled", raw.get("search_enabled", False)),
        browse_enabled=_parse_bool("browse_enabled", raw.get("browse_enabled", False)),
        browse_max_tokens=_parse_int("browse_max_tokens", raw.get("browse_max_tokens", 16000), minimum=1),
        jina_api_token=str(raw.get("jina_api_token") or "").strip(),
        session_idle_days=_parse_int("session_idle_days", raw.get("session_idle_days", 0)),
        health_port=_parse_int("health_port", raw.get("health_port", 0)),
        verbose=_parse_bool("verbose", raw.get("verbose", False)),
    )
