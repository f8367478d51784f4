from __future__ import annotations

import os
from typing import Optional

PG_DSN: Optional[str]
PG_SCHEMA: Optional[str]
GATEWAY_HOST: str
MODEL: str
TEMPERATURE: float
MAX_TOKENS: int
REQUEST_TIMEOUT: float
HISTORY_LIMIT: int
MEMORY_LIMIT: int
RESPONSE_LANGUAGE: str
MEMORY_ORDERING: str
FUNCTION_URL: Optional[str]
POLL_SECONDS: float
LOG_LEVEL: str
SERVER_HOST: str
SERVER_PORT: int

GATEWAY_API_KEY_ENV = "AIFRIEND_GATEWAY_API_KEY"
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
MEMORY_ORDERINGS = ("ordinal", "lexical")


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def reload_from_environment() -> None:
    """Refresh configuration values from the current environment."""

    global PG_DSN, PG_SCHEMA, GATEWAY_HOST, MODEL, TEMPERATURE, MAX_TOKENS, REQUEST_TIMEOUT
    global HISTORY_LIMIT, MEMORY_LIMIT, RESPONSE_LANGUAGE, MEMORY_ORDERING, FUNCTION_URL
    global POLL_SECONDS, LOG_LEVEL, SERVER_HOST, SERVER_PORT

    PG_DSN = _env_str("AIFRIEND_PG_DSN")
    PG_SCHEMA = _env_str("AIFRIEND_PG_SCHEMA")
    GATEWAY_HOST = (_env_str("AIFRIEND_GATEWAY_HOST") or "https://ai.gateway.lovable.dev").rstrip("/")
    MODEL = _env_str("AIFRIEND_MODEL") or "google/gemini-2.5-flash"
    TEMPERATURE = _env_float("AIFRIEND_TEMPERATURE", 0.8)
    MAX_TOKENS = _env_int("AIFRIEND_MAX_TOKENS", 500)
    REQUEST_TIMEOUT = _env_float("AIFRIEND_REQUEST_TIMEOUT", 120.0)
    HISTORY_LIMIT = _env_int("AIFRIEND_HISTORY_LIMIT", 20)
    MEMORY_LIMIT = _env_int("AIFRIEND_MEMORY_LIMIT", 10)
    RESPONSE_LANGUAGE = _env_str("AIFRIEND_RESPONSE_LANGUAGE") or "French"
    ordering = (_env_str("AIFRIEND_MEMORY_ORDERING") or "lexical").lower()
    MEMORY_ORDERING = ordering if ordering in MEMORY_ORDERINGS else "lexical"
    FUNCTION_URL = _env_str("AIFRIEND_FUNCTION_URL")
    POLL_SECONDS = _env_float("AIFRIEND_POLL_SECONDS", 1.0)
    LOG_LEVEL = (_env_str("AIFRIEND_LOG_LEVEL") or "INFO").upper()
    SERVER_HOST = _env_str("AIFRIEND_HOST") or "0.0.0.0"
    SERVER_PORT = _env_int("AIFRIEND_PORT", 7860)


def gateway_api_key() -> Optional[str]:
    """Return the inference gateway credential, read at call time."""

    return _env_str(GATEWAY_API_KEY_ENV)


reload_from_environment()


__all__ = [
    "CHAT_COMPLETIONS_PATH",
    "FUNCTION_URL",
    "GATEWAY_API_KEY_ENV",
    "GATEWAY_HOST",
    "HISTORY_LIMIT",
    "LOG_LEVEL",
    "MAX_TOKENS",
    "MEMORY_LIMIT",
    "MEMORY_ORDERING",
    "MEMORY_ORDERINGS",
    "MODEL",
    "PG_DSN",
    "PG_SCHEMA",
    "POLL_SECONDS",
    "REQUEST_TIMEOUT",
    "RESPONSE_LANGUAGE",
    "SERVER_HOST",
    "SERVER_PORT",
    "TEMPERATURE",
    "gateway_api_key",
    "reload_from_environment",
]
