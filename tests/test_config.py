from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from alterego.config import ConfigError, load_config

REQUIRED = {"TELEGRAM_BOT_TOKEN": "123:abc", "AI_OPENROUTER_API_KEY": "sk-test"}


class LoadConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = load_config(environ=REQUIRED)
        self.assertEqual(config.telegram_bot_token, "123:abc")
        self.assertEqual(config.llm_base_url, "https://openrouter.ai/api/v1")
        self.assertEqual(config.llm_default_model, "openai/gpt-5")
        self.assertEqual(config.llm_max_steps, 10)
        self.assertEqual(config.memory_max_count, 10)
        self.assertIsNone(config.database_path)
        self.assertTrue(config.talkative_enabled)
        self.assertEqual(config.talkative_probability, -1.0)
        self.assertEqual(config.talkative_mode, "canned")
        self.assertFalse(config.search_enabled)
        self.assertEqual(config.browse_max_tokens, 16000)
        self.assertEqual(config.session_idle_days, 0)
        self.assertEqual(config.health_port, 0)

    def test_missing_required(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            load_config(environ={"TELEGRAM_BOT_TOKEN": "123:abc"})
        self.assertIn("AI_OPENROUTER_API_KEY", str(ctx.exception))

    def test_environment_values_are_parsed(self) -> None:
        env = {
            **REQUIRED,
            "AI_MEMORY_MAX_COUNT": "5",
            "TALKATIVE_RANDOM_REPLY_ENABLED": "false",
            "TALKATIVE_RANDOM_REPLY_COVERAGE_PROBABILITY": "0.5",
            "TALKATIVE_RANDOM_REPLY_MODE": "AI",
            "SEARCH_ENABLED": "yes",
            "DATABASE_PATH": "/tmp/alterego/memory.db",
        }
        config = load_config(environ=env)
        self.assertEqual(config.memory_max_count, 5)
        self.assertFalse(config.talkative_enabled)
        self.assertEqual(config.talkative_probability, 0.5)
        self.assertEqual(config.talkative_mode, "ai")
        self.assertTrue(config.search_enabled)
        self.assertEqual(config.database_path, Path("/tmp/alterego/memory.db"))

    def test_invalid_values(self) -> None:
        cases = {
            "TALKATIVE_RANDOM_REPLY_COVERAGE_PROBABILITY": "1.5",
            "AI_MEMORY_MAX_COUNT": "zero",
            "AI_LLM_MAX_STEPS": "0",
            "VERBOSE": "maybe",
            "TALKATIVE_RANDOM_REPLY_MODE": "chatty",
        }
        for key, value in cases.items():
            with self.subTest(key=key):
                with self.assertRaises(ConfigError):
                    load_config(environ={**REQUIRED, key: value})

    def test_yaml_file_with_environment_override(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "alterego.yaml"
            path.write_text(
                "telegram_bot_token: from-file\n"
                "llm_api_key: sk-file\n"
                "llm_default_model: anthropic/claude-sonnet-4\n"
                "browse_enabled: true\n",
                encoding="utf-8",
            )
            config = load_config(path, environ={"AI_LLM_DEFAULT_MODEL": "openai/gpt-4o"})
        self.assertEqual(config.telegram_bot_token, "from-file")
        self.assertEqual(config.llm_default_model, "openai/gpt-4o")
        self.assertTrue(config.browse_enabled)

    def test_yaml_rejects_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "alterego.yaml"
            path.write_text("telegram_token: typo\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path, environ=REQUIRED)


if __name__ == "__main__":
    unittest.main()
