"""Environment-driven runtime settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("career_relay")

MODULE_DIR = Path(__file__).resolve().parent
REPO_ROOT = MODULE_DIR.parent

DEFAULT_API_URL = "https://api.deepseek.com/v1/chat/completions"
DEFAULT_MODEL = "deepseek-chat"
DEFAULT_LOCATION = "北京"


def load_env_files() -> None:
    # Priority: existing process env > backend/.env > repo/.env
    for path in (MODULE_DIR / ".env", REPO_ROOT / ".env"):
        if path.is_file():
            load_dotenv(dotenv_path=path, override=False)


def _first_nonempty_env(*keys: str) -> Optional[str]:
    for key in keys:
        value = os.getenv(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    api_key: str = ""
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    connect_timeout_sec: float = 10.0
    proxy_url: Optional[str] = None
    allowed_origins: tuple[str, ...] = ("*",)
    default_location: str = DEFAULT_LOCATION

    @property
    def upstream_configured(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1
    backlog: int = 2048
    timeout_keep_alive: int = 5
    log_level: str = "info"
    limit_concurrency: Optional[int] = None


def load_settings() -> Settings:
    load_env_files()
    origins = tuple(
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    )
    settings = Settings(
        api_key=_first_nonempty_env("DEEPSEEK_API_KEY") or "",
        api_url=_first_nonempty_env("DEEPSEEK_API_URL") or DEFAULT_API_URL,
        model=_first_nonempty_env("DEEPSEEK_MODEL") or DEFAULT_MODEL,
        connect_timeout_sec=_env_float("UPSTREAM_CONNECT_TIMEOUT_SEC", 10.0, minimum=1.0),
        proxy_url=_first_nonempty_env("OPENAI_PROXY_URL", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"),
        allowed_origins=origins or ("*",),
        default_location=_first_nonempty_env("DEFAULT_LOCATION") or DEFAULT_LOCATION,
    )
    if not settings.upstream_configured:
        logger.warning("DEEPSEEK_API_KEY is not set. Analysis requests will receive a diagnostic stream.")
    return settings


def load_server_settings() -> ServerSettings:
    load_env_files()
    return ServerSettings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_env_int("PORT", 8000, minimum=1),
        workers=_env_int("WEB_CONCURRENCY", 1, minimum=1),
        backlog=_env_int("UVICORN_BACKLOG", 2048, minimum=16),
        timeout_keep_alive=_env_int("UVICORN_TIMEOUT_KEEP_ALIVE", 5, minimum=1),
        log_level=os.getenv("UVICORN_LOG_LEVEL", "info").strip() or "info",
        limit_concurrency=_env_optional_int("UVICORN_LIMIT_CONCURRENCY"),
    )
