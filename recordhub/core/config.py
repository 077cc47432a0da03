"""
Centralised process settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Storage ──────────────────────────────────────────
    database_url: str = "sqlite:///./recordhub.db"

    # ── Access control ───────────────────────────────────
    access_control: bool = True
    user_header: str = "X-User-Id"
    groups_header: str = "X-Group-Ids"

    # ── Query engine ─────────────────────────────────────
    max_lookup_depth: int = 5
    reference_host: str = "tapp://localhost"
    rules_file: str = ""  # optional YAML with limit / uniqueness rules

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
