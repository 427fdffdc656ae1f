"""
Goal Gatekeeper — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from gatekeeper/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (host surface for the check-in conversation)
    TELEGRAM_BOT_TOKEN: str

    # LLM, provider-agnostic (openai, gemini, anthropic, cohere)
    LLM_PROVIDER: str = "openai"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str
    LLM_TIMEOUT_SECONDS: float = 45.0
    LLM_TEMPERATURE: float = 0.7

    # SQLite
    DATABASE_PATH: str = "data/gatekeeper.db"

    # Security: single user; the first id is the owner chat
    ALLOWED_USER_IDS: list[int] = []

    # Scheduler
    CHECK_INTERVAL_SECONDS: int = 60
    DEADLINE_CHECK_INTERVAL_SECONDS: int = 3600
    DEADLINE_WARNING_HOURS: int = 48
    TIMEZONE: str = "UTC"        # wall clock used for timestamps and display

    # One-time import of a legacy JSON export (optional)
    LEGACY_EXPORT_PATH: str = ""

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "CHECK_INTERVAL_SECONDS",
        "DEADLINE_CHECK_INTERVAL_SECONDS",
        "DEADLINE_WARNING_HOURS",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @field_validator("TIMEZONE")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown TIMEZONE {v!r}") from exc
        return v

    @property
    def owner_id(self) -> int | None:
        """Chat id that receives check-ins and notifications."""
        return self.ALLOWED_USER_IDS[0] if self.ALLOWED_USER_IDS else None


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "openai"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        LLM_TIMEOUT_SECONDS=os.getenv("LLM_TIMEOUT_SECONDS", "45"),
        LLM_TEMPERATURE=os.getenv("LLM_TEMPERATURE", "0.7"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/gatekeeper.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        CHECK_INTERVAL_SECONDS=os.getenv("CHECK_INTERVAL_SECONDS", "60"),
        DEADLINE_CHECK_INTERVAL_SECONDS=os.getenv("DEADLINE_CHECK_INTERVAL_SECONDS", "3600"),
        DEADLINE_WARNING_HOURS=os.getenv("DEADLINE_WARNING_HOURS", "48"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        LEGACY_EXPORT_PATH=os.getenv("LEGACY_EXPORT_PATH", ""),
    )


# Singleton, imported by all other modules as:
#   from gatekeeper.config import settings
settings = _load_settings()
