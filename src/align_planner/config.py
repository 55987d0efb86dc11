# src/align_planner/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time (remote credentials live in the sync state, not here).
- Tests build their own settings object instead of reading the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "ALIGN"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    console_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Sync ----
    # Calendar timezone used to derive shard keys (YYYY-MM) and month windows.
    timezone: str
    remote_base_dir: str
    webdav_timeout_seconds: float

    # ---- LLM (endpoint/key/model live in the AI settings document) ----
    llm_timeout_seconds: float
    llm_temperature: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "align") or "align"
        log_level = _env(_k("LOG_LEVEL"), "INFO")
        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/align"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "align.sqlite3")

        timezone = _env(_k("TIMEZONE"), "UTC").strip() or "UTC"
        remote_base_dir = "/" + (_env(_k("REMOTE_BASE_DIR"), "/align").strip().strip("/") or "align")
        webdav_timeout_seconds = _env_float(_k("WEBDAV_TIMEOUT_SECONDS"), 30.0)

        llm_timeout_seconds = _env_float(_k("LLM_TIMEOUT_SECONDS"), 60.0)
        llm_temperature = _env_float(_k("LLM_TEMPERATURE"), 0.7)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            data_dir=data_dir,
            db_path=db_path,
            timezone=timezone,
            remote_base_dir=remote_base_dir,
            webdav_timeout_seconds=webdav_timeout_seconds,
            llm_timeout_seconds=llm_timeout_seconds,
            llm_temperature=llm_temperature,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv(override=False)
    return Settings.from_env()
