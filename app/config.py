"""
Runtime configuration read from environment variables.

`app.main` loads a `.env` file (python-dotenv) before calling
`load_settings()`, so values may come from either source.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from app.services.auth import parse_token_table
from app.services.errors import ConfigurationError
from app.services.gemini_client import DEFAULT_BASE_URL, DEFAULT_MODEL


@dataclass(slots=True)
class Settings:
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_MODEL
    gemini_base_url: str = DEFAULT_BASE_URL
    gemini_timeout_seconds: float = 120.0
    circuit_threshold: int = 5
    circuit_open_seconds: float = 60.0
    generation_max_attempts: int = 3
    generation_base_delay_seconds: float = 1.0
    default_monthly_limit: int = 5
    # Bearer token -> user id, parsed from API_TOKENS.
    api_tokens: Dict[str, str] = field(default_factory=dict)
    usage_log_path: Path = Path("storage/generations.jsonl")
    log_level: str = "INFO"


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from `env` (defaults to `os.environ`)."""
    env = os.environ if env is None else env

    return Settings(
        gemini_api_key=env.get("GEMINI_API_KEY") or None,
        gemini_model=env.get("GEMINI_MODEL", DEFAULT_MODEL),
        gemini_base_url=env.get("GEMINI_BASE_URL", DEFAULT_BASE_URL),
        gemini_timeout_seconds=_float(env, "GEMINI_TIMEOUT_SECONDS", 120.0),
        circuit_threshold=_int(env, "CIRCUIT_THRESHOLD", 5, minimum=1),
        circuit_open_seconds=_float(env, "CIRCUIT_OPEN_SECONDS", 60.0),
        generation_max_attempts=_int(env, "GENERATION_MAX_ATTEMPTS", 3, minimum=1),
        generation_base_delay_seconds=_float(env, "GENERATION_BASE_DELAY_SECONDS", 1.0),
        default_monthly_limit=_int(env, "DEFAULT_MONTHLY_LIMIT", 5),
        api_tokens=parse_token_table(env.get("API_TOKENS")),
        usage_log_path=Path(env.get("USAGE_LOG_PATH", "storage/generations.jsonl")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
