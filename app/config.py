"""Environment-driven settings for the relay backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

ROOT = Path(__file__).resolve().parents[1]
_EXTRA_PREFIX = "RELAY_"
_TRUE = ("1", "true", "yes")


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(env: Mapping[str, str], key: str, default: str = "") -> bool:
    return env.get(key, default).strip().lower() in _TRUE


@dataclass
class Settings:
    app_env: str = "dev"
    use_db: bool = False
    extension_api_key: str = ""
    jwt_secret: str = ""
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_model: str = "gpt-4o-mini"
    openai_timeout: float = 30.0
    claim_batch_size: int = 5
    max_attempts: int = 5
    stale_lock_seconds: int = 300
    reaper_enabled: bool = True
    reaper_interval_seconds: float = 120.0
    reaper_startup_timeout_seconds: float = 30.0
    unknown_errors_retryable: bool = True
    # Unrecognised RELAY_* keys, kept for forward-compatible options.
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


_KNOWN_KEYS = {
    "RELAY_CLAIM_BATCH_SIZE",
    "RELAY_MAX_ATTEMPTS",
    "RELAY_STALE_LOCK_SECONDS",
    "RELAY_REAPER_ENABLED",
    "RELAY_REAPER_INTERVAL_SECONDS",
    "RELAY_REAPER_STARTUP_TIMEOUT_SECONDS",
    "RELAY_UNKNOWN_ERRORS_RETRYABLE",
}


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    if env is None:
        _load_env_file(ROOT / "app" / ".env")
        env = os.environ
    extra = {
        key[len(_EXTRA_PREFIX):].lower(): value
        for key, value in env.items()
        if key.startswith(_EXTRA_PREFIX) and key not in _KNOWN_KEYS
    }
    return Settings(
        app_env=env.get("APP_ENV", env.get("ENV", "dev")).strip().lower() or "dev",
        use_db=env.get("USE_DB", "").strip() == "1",
        extension_api_key=env.get("EXTENSION_API_KEY", "").strip(),
        jwt_secret=env.get("JWT_SECRET", "").strip(),
        openai_api_key=env.get("OPENAI_API_KEY", "").strip(),
        openai_base_url=env.get("OPENAI_BASE_URL", "").strip() or "https://api.openai.com",
        openai_model=env.get("OPENAI_MODEL", "").strip() or "gpt-4o-mini",
        openai_timeout=float(env.get("OPENAI_TIMEOUT", "30")),
        claim_batch_size=int(env.get("RELAY_CLAIM_BATCH_SIZE", "5")),
        max_attempts=int(env.get("RELAY_MAX_ATTEMPTS", "5")),
        stale_lock_seconds=int(env.get("RELAY_STALE_LOCK_SECONDS", "300")),
        reaper_enabled=_flag(env, "RELAY_REAPER_ENABLED", "1"),
        reaper_interval_seconds=float(env.get("RELAY_REAPER_INTERVAL_SECONDS", "120")),
        reaper_startup_timeout_seconds=float(env.get("RELAY_REAPER_STARTUP_TIMEOUT_SECONDS", "30")),
        unknown_errors_retryable=_flag(env, "RELAY_UNKNOWN_ERRORS_RETRYABLE", "1"),
        extra=extra,
    )
