"""Centralized configuration for the Engezna Smart Assistant agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/engezna/<VARIABLE_NAME>``.

Secrets are resolved lazily through :func:`require_env` when a client is
built, so importing the package (tests, CLI ``--help``) never needs them.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/engezna/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def require_env(name: str, *aliases: str) -> str:
    """Return a config value from env-var (or an alias) or SSM, or raise.

    ``aliases`` are alternative env-var names checked in order after
    ``name`` (e.g. ``CLAUDE_API_KEY`` for ``ANTHROPIC_API_KEY``).
    """
    for candidate in (name, *aliases):
        value = os.getenv(candidate)
        if value and not value.startswith("your_"):
            return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /engezna/{name} (AWS)."
    )


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


def _list_env(name: str, default: str = "") -> list[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


# ── LLM ─────────────────────────────────────────────────────────────
# Single global switch: "anthropic" or "openai".
AGENT_PROVIDER: str = os.getenv("AGENT_PROVIDER", "anthropic").strip().lower()
ANTHROPIC_MODEL_NAME: str = os.getenv("ANTHROPIC_MODEL_NAME", "claude-3-5-haiku-20241022")
OPENAI_MODEL_NAME: str = os.getenv("OPENAI_MODEL_NAME", "gpt-4o-mini")
LLM_TEMPERATURE: float = _float_env("LLM_TEMPERATURE", "0.7")
LLM_MAX_TOKENS: int = _int_env("LLM_MAX_TOKENS", "1024")
LLM_TIMEOUT_SECONDS: float = _float_env("LLM_TIMEOUT_SECONDS", "30")

# ── Conversation loop ───────────────────────────────────────────────
MAX_TOOL_ROUNDS: int = _int_env("MAX_TOOL_ROUNDS", "5")
UPSTREAM_RETRY_BACKOFF_SECONDS: float = _float_env("UPSTREAM_RETRY_BACKOFF_SECONDS", "1.0")

# ── Rate limiting ───────────────────────────────────────────────────
RATE_LIMIT_MAX_CALLS: int = _int_env("RATE_LIMIT_MAX_CALLS", "10")
RATE_LIMIT_WINDOW_SECONDS: float = _float_env("RATE_LIMIT_WINDOW_SECONDS", "60")

# ── Embeddings ──────────────────────────────────────────────────────
EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
EMBEDDING_CACHE_TTL_SECONDS: float = _float_env("EMBEDDING_CACHE_TTL_SECONDS", "1800")
SEMANTIC_SEARCH_ENABLED: bool = os.getenv("SEMANTIC_SEARCH_ENABLED", "true").lower() == "true"

# ── Data store (Supabase / PostgREST) ───────────────────────────────
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "http://localhost:54321")

# Governorates where order placement is offered; empty means everywhere.
SERVICEABLE_GOVERNORATE_IDS: list[str] = _list_env("SERVICEABLE_GOVERNORATE_IDS")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", "8000")
CORS_ORIGINS: list[str] = _list_env(
    "CORS_ORIGINS",
    "http://localhost:3000,https://engezna.com",
)


def validate_settings() -> None:
    """Fail fast on tunables that would break the conversation loop."""
    if AGENT_PROVIDER not in ("anthropic", "openai"):
        raise ValueError(f"AGENT_PROVIDER must be 'anthropic' or 'openai', got {AGENT_PROVIDER!r}")
    if MAX_TOOL_ROUNDS < 1:
        raise ValueError(f"MAX_TOOL_ROUNDS must be >= 1, got {MAX_TOOL_ROUNDS}")
    if RATE_LIMIT_MAX_CALLS < 1:
        raise ValueError(f"RATE_LIMIT_MAX_CALLS must be >= 1, got {RATE_LIMIT_MAX_CALLS}")
    if RATE_LIMIT_WINDOW_SECONDS <= 0:
        raise ValueError(
            f"RATE_LIMIT_WINDOW_SECONDS must be > 0, got {RATE_LIMIT_WINDOW_SECONDS}"
        )
    if not 0.0 <= LLM_TEMPERATURE <= 2.0:
        raise ValueError(f"LLM_TEMPERATURE must be between 0.0 and 2.0, got {LLM_TEMPERATURE}")
