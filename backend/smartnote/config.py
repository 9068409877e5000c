"""
Configuration management for the application.

Loads environment variables and provides centralized config access.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration"""

    # Flask settings
    FLASK_ENV: str = os.getenv("FLASK_ENV", "development")
    DEBUG: bool = FLASK_ENV == "development"
    FRONTEND_URL: Optional[str] = os.getenv("FRONTEND_URL")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # OpenAI settings
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    # Search-enabled model used by the research mode (returns url citations)
    OPENAI_SEARCH_MODEL: str = os.getenv("OPENAI_SEARCH_MODEL", "gpt-4o-mini-search-preview")

    # Storage settings
    BASE_DIR: Path = Path(__file__).parent.parent
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    # Auto-save debounce
    AUTOSAVE_DELAY_SECONDS: float = float(os.getenv("AUTOSAVE_DELAY_SECONDS", "2.0"))

    # Search highlighting: queries shorter than this (after trimming) are ignored
    HIGHLIGHT_MIN_QUERY_LENGTH: int = int(os.getenv("HIGHLIGHT_MIN_QUERY_LENGTH", "2"))

    # Weekly summary schedule (weekday: Monday=0 ... Sunday=6)
    WEEKLY_SUMMARY_WEEKDAY: int = int(os.getenv("WEEKLY_SUMMARY_WEEKDAY", "4"))
    WEEKLY_SUMMARY_HOUR: int = int(os.getenv("WEEKLY_SUMMARY_HOUR", "17"))
    WEEKLY_SUMMARY_MINUTE: int = int(os.getenv("WEEKLY_SUMMARY_MINUTE", "0"))
    WEEKLY_SCHEDULER_INTERVAL_SECONDS: float = float(
        os.getenv("WEEKLY_SCHEDULER_INTERVAL_SECONDS", "30")
    )

    @classmethod
    def validate(cls):
        """Validate required configuration"""
        errors = []

        if not cls.OPENAI_API_KEY:
            errors.append("OPENAI_API_KEY is not set")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    @classmethod
    def sqlite_path(cls) -> Path:
        """Default SQLite file used when DATABASE_URL is not set."""
        return cls.BASE_DIR / ".smartnote.db"

