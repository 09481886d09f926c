"""Environment-backed application settings with strict validation."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "SESSION_SECRET",
)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}
_TRUTHY = ("1", "true", "yes", "on")


def _read_env_var(name: str, env: Mapping[str, str | None]) -> str:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return str(value)


def _optional(name: str, env: Mapping[str, str | None]) -> str | None:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def parse_duration(value: str) -> float:
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    seconds = float(amount) * _DURATION_UNITS[unit]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def _parse_int(name: str, value: str | None, default: int | None) -> int | None:
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value!r}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must not be negative")
    return parsed


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str
    config_dir: Path = Path("etc")
    cache_dir: Path = Path("cache")
    preview_generation_interval: float = 600.0
    max_preview_size: int | None = None
    preview_features: frozenset[str] = field(default_factory=frozenset)
    trust_proxy: bool = False
    lockout_threshold: int = 10
    lockout_window_seconds: int = 300
    session_ttl_seconds: int = 86400
    app_env: str = "development"

    @property
    def temp_dir(self) -> Path:
        return self.cache_dir / "temp"

    @property
    def previewers_path(self) -> Path:
        return self.config_dir / "previewers.json"

    def ensure_directories(self) -> None:
        if not self.config_dir.exists():
            logger.warning("Configuration directory %s does not exist", self.config_dir)
        for directory in (self.cache_dir, self.temp_dir):
            if not directory.exists():
                logger.warning("Creating missing cache directory %s", directory)
                directory.mkdir(parents=True, exist_ok=True)


def load_settings(env: Mapping[str, str | None] | None = None) -> Settings:
    """Load and validate environment variables into a Settings object."""
    source_env = os.environ if env is None else env

    missing = [key for key in REQUIRED_ENV_VARS if not str(source_env.get(key) or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    app_env = str(source_env.get("APP_ENV", "development")).strip() or "development"
    interval = _optional("PREVIEW_GENERATION_INTERVAL", source_env)
    features = _optional("PREVIEW_FEATURES", source_env) or ""

    settings = Settings(
        database_url=_read_env_var("DATABASE_URL", source_env),
        session_secret=_read_env_var("SESSION_SECRET", source_env),
        config_dir=Path(_optional("CONFIG_DIR", source_env) or "etc"),
        cache_dir=Path(_optional("CACHE_DIR", source_env) or "cache"),
        preview_generation_interval=parse_duration(interval) if interval else 600.0,
        max_preview_size=_parse_int("MAX_PREVIEW_SIZE", _optional("MAX_PREVIEW_SIZE", source_env), None),
        preview_features=frozenset(item.strip() for item in features.split(",") if item.strip()),
        trust_proxy=(_optional("TRUST_PROXY", source_env) or "").lower() in _TRUTHY,
        lockout_threshold=_parse_int("LOCKOUT_THRESHOLD", _optional("LOCKOUT_THRESHOLD", source_env), 10),
        lockout_window_seconds=_parse_int(
            "LOCKOUT_WINDOW_SECONDS", _optional("LOCKOUT_WINDOW_SECONDS", source_env), 300
        ),
        session_ttl_seconds=_parse_int(
            "SESSION_TTL_SECONDS", _optional("SESSION_TTL_SECONDS", source_env), 86400
        ),
        app_env=app_env,
    )

    logger.info("Loaded application settings for env=%s", settings.app_env)
    return settings
