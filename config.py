"""
Central configuration — reads from .env file.

Everything is read once at import time. Components receive these values as
constructor arguments (see providers/manager.py), so tests can build isolated
instances without touching the environment.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(env_key: str, default: bool = True) -> bool:
    """Tolerant boolean parsing: false/0/no/off disable, anything else enables."""
    raw = os.getenv(env_key, "true" if default else "false")
    return raw.strip().lower() not in ("false", "0", "no", "off")


# ── Primary provider (OpenRouter, OpenAI-compatible) ──────────────────────────
# Required. Without it the primary client refuses to start.
OPENROUTER_API_KEY: str | None = os.getenv("OPENROUTER_API_KEY")
PRIMARY_BASE_URL: str          = os.getenv("PRIMARY_BASE_URL", "https://openrouter.ai/api/v1")
PRIMARY_MODEL: str             = os.getenv("PRIMARY_MODEL", "google/gemini-2.0-flash-exp:free")
PRIMARY_TIMEOUT_SECS: float    = float(os.getenv("PRIMARY_TIMEOUT_SECS", "120"))

# 429 handling inside the primary client: up to N attempts, doubling delay
PRIMARY_MAX_ATTEMPTS: int            = int(os.getenv("PRIMARY_MAX_ATTEMPTS", "5"))
PRIMARY_INITIAL_BACKOFF_SECS: float  = float(os.getenv("PRIMARY_INITIAL_BACKOFF_SECS", "2.0"))

# ── Rate governor (outbound calls to the primary provider) ────────────────────
RATE_MAX_CONCURRENT: int       = int(os.getenv("RATE_MAX_CONCURRENT", "3"))
RATE_MIN_SPACING_MS: int       = int(os.getenv("RATE_MIN_SPACING_MS", "150"))
RATE_QUOTA: int                = int(os.getenv("RATE_QUOTA", "100"))
RATE_QUOTA_WINDOW_SECS: float  = float(os.getenv("RATE_QUOTA_WINDOW_SECS", "60"))

# ── Fallback provider (local Ollama, OpenAI-compatible /v1 endpoint) ──────────
FALLBACK_ENABLED: bool         = _env_bool("FALLBACK_ENABLED")
FALLBACK_BASE_URL: str         = os.getenv("FALLBACK_BASE_URL", "http://localhost:11434")
FALLBACK_MODEL: str            = os.getenv("FALLBACK_MODEL", "minicpm-v")
FALLBACK_API_KEY: str          = os.getenv("FALLBACK_API_KEY", "ollama")
FALLBACK_TIMEOUT_SECS: float   = float(os.getenv("FALLBACK_TIMEOUT_SECS", "120"))

# Also fall back when the primary fails with a non-429 error
# (throttle exhaustion always falls back when a fallback is registered)
FALLBACK_ON_PROVIDER_ERROR: bool = _env_bool("FALLBACK_ON_PROVIDER_ERROR")

# ── Orchestrator / worker pool ────────────────────────────────────────────────
RATE_LIMIT_COOLDOWN_SECS: float      = float(os.getenv("RATE_LIMIT_COOLDOWN_SECS", "5"))
ANALYSIS_WORKERS: int                = int(os.getenv("ANALYSIS_WORKERS", "2"))
ANALYSIS_JOB_MAX_ATTEMPTS: int       = int(os.getenv("ANALYSIS_JOB_MAX_ATTEMPTS", "3"))
ANALYSIS_JOB_RETRY_DELAY_SECS: float = float(os.getenv("ANALYSIS_JOB_RETRY_DELAY_SECS", "2"))

# ── Storage ───────────────────────────────────────────────────────────────────
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "uploads")
DATA_DIR: str   = os.getenv("DATA_DIR", "data")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
