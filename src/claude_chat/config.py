"""Environment-driven settings for claude-chat."""

import os
from pathlib import Path

ANTHROPIC_VERSION = "2023-06-01"
CACHING_BETA = "prompt-caching-2024-07-31"

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 2.0

DEFAULT_UPSTREAM_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MAX_BYTES = 1024 * 1024 * 1024  # 1GB

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
MODEL_MAX_TOKENS = {
    "claude-3-5-sonnet-20241022": 8192,
    "claude-3-opus-20240229": 4096,
    "claude-3-5-haiku-20241022": 8192,
}

OVERLOAD_FRIENDLY_MESSAGE = "Claude is overloaded at the moment. Please try again later."

DEFAULT_SYSTEM_DIRECTIVES = (
    "You are my personal AI assistant named AI. Provide accurate and helpful answers, "
    "and by default, respond in Markdown. The user is interacting with you through a web "
    "interface. Strive to be concise but complete in your answers."
)


def _env_number(name: str, default, cast=int):
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return cast(value)
    except ValueError:
        return default


def get_database_path() -> Path:
    """Return the path to the SQLite datastore."""
    env = os.environ.get("CLAUDE_CHAT_DB_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude-chat" / "chat.db"


def get_max_bytes() -> int:
    """Return the byte ceiling shared by uploads and relayed request bodies."""
    return _env_number("CLAUDE_CHAT_MAX_BYTES", DEFAULT_MAX_BYTES)


def get_upstream_url() -> str:
    return os.environ.get("CLAUDE_CHAT_UPSTREAM_URL") or DEFAULT_UPSTREAM_URL


def get_watchdog_seconds() -> float:
    """Return the relay watchdog, re-armed on every forwarded chunk."""
    return _env_number("CLAUDE_CHAT_WATCHDOG_SECONDS", 300.0, float)


def get_idle_timeout_seconds() -> float:
    """Return how long the stream client waits between chunks."""
    return _env_number("CLAUDE_CHAT_IDLE_TIMEOUT_SECONDS", 60.0, float)


def get_db_retries() -> int:
    return _env_number("CLAUDE_CHAT_DB_RETRIES", 20)


def get_db_retry_delay() -> float:
    return _env_number("CLAUDE_CHAT_DB_RETRY_DELAY", 3.0, float)
