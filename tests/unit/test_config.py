"""Unit tests for settings, token parsing and the usage log."""

import json
import os
from pathlib import Path

import pytest

from app.config import load_settings
from app.main import load_environment
from app.services.auth import StaticTokenVerifier, extract_bearer_token, parse_token_table
from app.services.errors import ConfigurationError, Unauthorized
from app.services.usage_log import JsonlUsageLogger


def read_usage_log(path: Path) -> list:
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})

        assert settings.gemini_api_key is None
        assert settings.circuit_threshold == 5
        assert settings.circuit_open_seconds == 60.0
        assert settings.generation_max_attempts == 3
        assert settings.generation_base_delay_seconds == 1.0
        assert settings.default_monthly_limit == 5
        assert settings.api_tokens == {}
        assert settings.usage_log_path == Path("storage/generations.jsonl")

    def test_reads_environment(self):
        settings = load_settings(
            {
                "GEMINI_API_KEY": "abc",
                "CIRCUIT_THRESHOLD": "3",
                "CIRCUIT_OPEN_SECONDS": "15.5",
                "DEFAULT_MONTHLY_LIMIT": "50",
                "API_TOKENS": "tok-a:alice, tok-b:bob",
                "LOG_LEVEL": "debug",
            }
        )

        assert settings.gemini_api_key == "abc"
        assert settings.circuit_threshold == 3
        assert settings.circuit_open_seconds == 15.5
        assert settings.default_monthly_limit == 50
        assert settings.api_tokens == {"tok-a": "alice", "tok-b": "bob"}
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "env",
        [
            {"CIRCUIT_THRESHOLD": "many"},
            {"CIRCUIT_THRESHOLD": "0"},
            {"CIRCUIT_OPEN_SECONDS": "-1"},
            {"GENERATION_MAX_ATTEMPTS": "1.5"},
        ],
    )
    def test_invalid_values_raise(self, env):
        with pytest.raises(ConfigurationError):
            load_settings(env)


class TestTokens:
    def test_parse_skips_malformed_entries(self):
        assert parse_token_table("good:user, broken, :nouser, notoken:") == {"good": "user"}

    def test_parse_empty(self):
        assert parse_token_table(None) == {}

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc123") == "abc123"
        assert extract_bearer_token("bearer   abc123 ") == "abc123"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    def test_extract_rejects_malformed_header(self, header):
        with pytest.raises(Unauthorized):
            extract_bearer_token(header)

    def test_verifier_maps_token_to_user(self):
        verifier = StaticTokenVerifier({"tok": "alice"})
        assert verifier.verify("tok") == "alice"

    def test_verifier_rejects_unknown_token(self):
        with pytest.raises(Unauthorized):
            StaticTokenVerifier({"tok": "alice"}).verify("other")


class TestUsageLog:
    def test_appends_one_line_per_generation(self, tmp_path):
        path = tmp_path / "logs" / "generations.jsonl"
        usage_logger = JsonlUsageLogger(path)

        usage_logger.record("alice", "1:1", 4, [b"a" * 10, b"b" * 20, b"c", b"d"])
        usage_logger.record("bob", "4:5", 4, [b"x"] * 4)

        entries = read_usage_log(path)
        assert [entry["user_id"] for entry in entries] == ["alice", "bob"]
        assert entries[0]["aspect"] == "1:1"
        assert entries[0]["image_count"] == 4
        assert entries[0]["image_bytes"] == [10, 20, 1, 1]
        assert "timestamp" in entries[0]


class TestLoadEnvironment:
    def test_returns_loaded_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DISH_RESTYLE_SAMPLE", "placeholder")
        monkeypatch.delenv("DISH_RESTYLE_SAMPLE")
        env_file = tmp_path / ".env"
        env_file.write_text("DISH_RESTYLE_SAMPLE=from-dotenv\n", encoding="utf-8")

        assert load_environment(env_file) == env_file
        assert os.environ["DISH_RESTYLE_SAMPLE"] == "from-dotenv"

    def test_missing_file_returns_none(self, tmp_path):
        assert load_environment(tmp_path / ".env") is None
