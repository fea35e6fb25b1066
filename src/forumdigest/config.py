"""Centralised configuration loaded from environment variables and dotenv."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# ── Forum (Discourse) ──────────────────────────────────────────────────────
FORUM_BASE_URL: str = os.getenv("FORUM_BASE_URL", "https://forum.zcashcommunity.com")
FORUM_MAX_PAGES: int = int(os.getenv("FORUM_MAX_PAGES", "1"))
FORUM_PAGE_DELAY_SECS: float = float(os.getenv("FORUM_PAGE_DELAY_SECS", "1.0"))

# ── LLM (local Ollama) ─────────────────────────────────────────────────────
LLM_MODEL: str = os.getenv("LLM_MODEL", "qwen2.5:latest")
OLLAMA_BASE_URL: str = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
OLLAMA_MAX_ELAPSED_SECS: float = float(os.getenv("OLLAMA_MAX_ELAPSED_SECS", "120"))
OLLAMA_KEEP_ALIVE: str = os.getenv("OLLAMA_KEEP_ALIVE", "5m")
SUMMARY_FORMAT: str = os.getenv("SUMMARY_FORMAT", "text").lower()
SUMMARY_SYSTEM_PROMPT_FILE: str = os.getenv("SUMMARY_SYSTEM_PROMPT_FILE", "")

# ── Excerpt ────────────────────────────────────────────────────────────────
EXCERPT_MAX_CHARS: int = int(os.getenv("EXCERPT_MAX_CHARS", "1800"))
DIGEST_WINDOW_HOURS: float | None = (
    float(os.environ["DIGEST_WINDOW_HOURS"]) if os.getenv("DIGEST_WINDOW_HOURS") else None
)

# ── Output ─────────────────────────────────────────────────────────────────
SINK_MODE: str = os.getenv("SINK_MODE", "persist").lower()
DB_PATH: Path = Path(
    os.getenv("FORUMDIGEST_DB", str(PROJECT_ROOT / "var" / "forumdigest.sqlite3"))
)
OUTPUT_DIR: Path = Path(os.getenv("FORUMDIGEST_OUTPUT_DIR", str(PROJECT_ROOT / "public")))

SINK_MODES = ("persist", "render")
SUMMARY_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when the environment-supplied configuration is unusable."""


def validate() -> None:
    """Check the loaded settings once at startup; raise ``ConfigError`` on the first problem."""
    if SINK_MODE not in SINK_MODES:
        raise ConfigError(f"SINK_MODE must be one of {SINK_MODES}, got {SINK_MODE!r}")
    if SUMMARY_FORMAT not in SUMMARY_FORMATS:
        raise ConfigError(
            f"SUMMARY_FORMAT must be one of {SUMMARY_FORMATS}, got {SUMMARY_FORMAT!r}"
        )
    for name, url in (("FORUM_BASE_URL", FORUM_BASE_URL), ("OLLAMA_BASE_URL", OLLAMA_BASE_URL)):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"{name} is not an http(s) URL: {url!r}")
    if not LLM_MODEL:
        raise ConfigError("LLM_MODEL is empty.")
    if OLLAMA_MAX_ELAPSED_SECS <= 0:
        raise ConfigError("OLLAMA_MAX_ELAPSED_SECS must be positive.")
    if EXCERPT_MAX_CHARS <= 0:
        raise ConfigError("EXCERPT_MAX_CHARS must be positive.")
    if FORUM_MAX_PAGES < 1:
        raise ConfigError("FORUM_MAX_PAGES must be at least 1.")
    if DIGEST_WINDOW_HOURS is not None and DIGEST_WINDOW_HOURS <= 0:
        raise ConfigError("DIGEST_WINDOW_HOURS must be positive when set.")
    if SUMMARY_SYSTEM_PROMPT_FILE and not Path(SUMMARY_SYSTEM_PROMPT_FILE).is_file():
        raise ConfigError(f"SUMMARY_SYSTEM_PROMPT_FILE not found: {SUMMARY_SYSTEM_PROMPT_FILE}")


def system_prompt() -> str | None:
    """Return the externally configured system prompt, or None to use the built-in one."""
    if not SUMMARY_SYSTEM_PROMPT_FILE:
        return None
    return Path(SUMMARY_SYSTEM_PROMPT_FILE).read_text(encoding="utf-8").strip()
