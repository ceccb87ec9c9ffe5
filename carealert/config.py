"""
CareAlert — Centralized configuration.

Loads all settings from .env and validates them once at import time.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

# Load .env from project root (one level up from carealert/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/carealert.db"

    # Reminder due-check
    REMINDER_POLL_SECONDS: int = 60
    DEFAULT_SNOOZE_MINUTES: int = 10

    # Emergency SMS fan-out
    SMS_BATCH_SIZE: int = 5
    SMS_TRIGGER_SOURCES: list[str] = ["voice", "button", "auto"]
    SEND_REMINDER_SMS: bool = False

    # Twilio (gateway is configured only when all three are set)
    TWILIO_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM: str = ""
    TWILIO_TIMEOUT_SECONDS: float = 10.0

    # Realtime push: seconds a connection gets to accept one event
    PUSH_TIMEOUT_SECONDS: float = 5.0

    ALERT_LIST_LIMIT: int = 200
    LOG_LEVEL: str = "INFO"

    @field_validator(
        "REMINDER_POLL_SECONDS",
        "DEFAULT_SNOOZE_MINUTES",
        "SMS_BATCH_SIZE",
        "ALERT_LIST_LIMIT",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("TWILIO_TIMEOUT_SECONDS", "PUSH_TIMEOUT_SECONDS", mode="before")
    @classmethod
    def parse_timeout(cls, v: str | float) -> float:
        value = float(v)
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("SMS_TRIGGER_SOURCES", mode="before")
    @classmethod
    def parse_sources(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return [s.strip().lower() for s in v if s.strip()]
        if isinstance(v, str) and v.strip():
            return [s.strip().lower() for s in v.split(",") if s.strip()]
        return []

    @field_validator("SEND_REMINDER_SMS", mode="before")
    @classmethod
    def parse_flag(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in _TRUTHY

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"

    @property
    def sms_configured(self) -> bool:
        return bool(self.TWILIO_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_FROM)


def _load_settings() -> Settings:
    """Load settings from environment, exiting on invalid values."""
    try:
        return Settings(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/carealert.db"),
            REMINDER_POLL_SECONDS=os.getenv("REMINDER_POLL_SECONDS", "60"),
            DEFAULT_SNOOZE_MINUTES=os.getenv("DEFAULT_SNOOZE_MINUTES", "10"),
            SMS_BATCH_SIZE=os.getenv("SMS_BATCH_SIZE", "5"),
            SMS_TRIGGER_SOURCES=os.getenv("SMS_TRIGGER_SOURCES", "voice,button,auto"),
            SEND_REMINDER_SMS=os.getenv("SEND_REMINDER_SMS", "false"),
            TWILIO_SID=os.getenv("TWILIO_SID", ""),
            TWILIO_AUTH_TOKEN=os.getenv("TWILIO_AUTH_TOKEN", ""),
            TWILIO_FROM=os.getenv("TWILIO_FROM", ""),
            TWILIO_TIMEOUT_SECONDS=os.getenv("TWILIO_TIMEOUT_SECONDS", "10"),
            PUSH_TIMEOUT_SECONDS=os.getenv("PUSH_TIMEOUT_SECONDS", "5"),
            ALERT_LIST_LIMIT=os.getenv("ALERT_LIST_LIMIT", "200"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        )
    except ValidationError as exc:
        print(f"ERROR: invalid configuration in .env:\n{exc}", file=sys.stderr)
        sys.exit(1)


# Singleton — imported by all other modules as:
#   from carealert.config import settings
settings = _load_settings()
