import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from medassist.core.config import get_settings, load_env_file, reset_settings

NO_ENV_FILE = {"MEDASSIST_ENV_FILE": "/nonexistent/.env"}


class TestSettings(unittest.TestCase):
    def setUp(self) -> None:
        reset_settings()

    def tearDown(self) -> None:
        reset_settings()

    def test_defaults(self) -> None:
        with patch.dict(os.environ, {**NO_ENV_FILE, "LLM_API_KEY": "llm-key"}, clear=True):
            settings = get_settings()
        self.assertEqual(settings.llm_model, "gpt-4o-mini")
        self.assertEqual((settings.llm_max_tokens, settings.llm_temperature), (1024, 0.2))
        self.assertEqual((settings.match_threshold, settings.match_limit), (0.8, 5))
        self.assertEqual(settings.max_section_length, 2500)
        self.assertEqual(settings.embedding_backend, "sentence-transformers")
        self.assertEqual((settings.embedding_model, settings.embedding_dim), ("thenlper/gte-small", 384))
        self.assertIsNone(settings.database_url)

    def test_cached_until_reset(self) -> None:
        with patch.dict(os.environ, {**NO_ENV_FILE, "LLM_API_KEY": "one"}, clear=True):
            first = get_settings()
            os.environ["LLM_API_KEY"] = "two"
            self.assertIs(get_settings(), first)
            reset_settings()
            self.assertEqual(get_settings().llm_api_key, "two")

    def test_openai_key_is_the_llm_fallback(self) -> None:
        env = {**NO_ENV_FILE, "OPENAI_API_KEY": "sk-test", "EMBEDDING_BACKEND": "OpenAI"}
        with patch.dict(os.environ, env, clear=True):
            settings = get_settings()
        self.assertEqual(settings.llm_api_key, "sk-test")
        self.assertEqual(settings.embedding_backend, "openai")
        self.assertEqual((settings.embedding_model, settings.embedding_dim), ("text-embedding-3-small", 1536))

    def test_missing_api_key(self) -> None:
        with patch.dict(os.environ, NO_ENV_FILE, clear=True):
            with self.assertRaises(ValueError):
                get_settings()

    def test_invalid_values(self) -> None:
        cases = [
            {"EMBEDDING_BACKEND": "word2vec"},
            {"EMBEDDING_BACKEND": "openai"},
            {"MATCH_THRESHOLD": "1.5"},
            {"MATCH_LIMIT": "five"},
        ]
        for extra in cases:
            with self.subTest(extra=extra):
                reset_settings()
                with patch.dict(os.environ, {**NO_ENV_FILE, "LLM_API_KEY": "k", **extra}, clear=True):
                    with self.assertRaises(ValueError):
                        get_settings()

    def test_env_file_does_not_override_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text(
                "# comment\nLLM_API_KEY='from-file'\nMATCH_LIMIT=3\nnot a pair\n",
                encoding="utf-8",
            )
            env = {"MEDASSIST_ENV_FILE": str(env_file), "MATCH_LIMIT": "7"}
            with patch.dict(os.environ, env, clear=True):
                settings = get_settings()
        self.assertEqual(settings.llm_api_key, "from-file")
        self.assertEqual(settings.match_limit, 7)

    def test_load_env_file_override(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text('LOG_LEVEL="debug"\n', encoding="utf-8")
            with patch.dict(os.environ, {"LOG_LEVEL": "INFO"}, clear=True):
                load_env_file(str(env_file), override=True)
                self.assertEqual(os.environ["LOG_LEVEL"], "debug")


if __name__ == "__main__":
    unittest.main()
