# flowerscan/config.py
"""
Process configuration, read once from the environment at startup.

The signing secret lives here only long enough to be handed to the
TokenSigner; nothing else reads QR_SECRET from the environment.
"""
from __future__ import annotations
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import ConfigError

LOCK_BACKENDS = ("row", "local", "redis")

DEFAULT_EXPIRATION_MINUTES = 60
DEFAULT_MAX_LENGTH = 2000
DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass(frozen=True)
class Settings:
    database_url: str
    qr_secret: str = field(repr=False)
    qr_expiration_minutes: int = DEFAULT_EXPIRATION_MINUTES
    qr_max_length: int = DEFAULT_MAX_LENGTH
    lock_backend: str = "row"
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512
    session_secret: str = field(default="dev-secret-change-me", repr=False)
    admin_username: str = "admin"
    admin_password: str = field(default="supasecret", repr=False)
    public_scan_url: Optional[str] = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # None: single writer on sqlite, pool size on postgres
    db_gate_limit: Optional[int] = None

    def engine_options(self) -> dict:
        return {
            "pool_size": self.db_pool_size,
            "max_overflow": self.db_max_overflow,
            "pool_timeout": self.db_pool_timeout,
            "gate_limit": self.db_gate_limit,
        }


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    database_url = env.get("DATABASE_URL")
    if not database_url:
        raise ConfigError("DATABASE_URL is required")

    secret = env.get("QR_SECRET")
    if not secret:
        raise ConfigError("QR_SECRET is required")

    minutes = _int(env, "QR_EXPIRATION_MINUTES", DEFAULT_EXPIRATION_MINUTES)
    if minutes <= 0:
        raise ConfigError("QR_EXPIRATION_MINUTES must be positive")

    max_length = _int(env, "QR_MAX_LENGTH", DEFAULT_MAX_LENGTH)
    if max_length <= 0:
        raise ConfigError("QR_MAX_LENGTH must be positive")

    backend = env.get("REDEEM_LOCK_BACKEND", "row").lower()
    if backend not in LOCK_BACKENDS:
        raise ConfigError(
            f"REDEEM_LOCK_BACKEND must be one of {', '.join(LOCK_BACKENDS)}"
        )

    lock_timeout = _float(env, "REDEEM_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT)
    if lock_timeout <= 0:
        raise ConfigError("REDEEM_LOCK_TIMEOUT must be positive")

    pool_size = _int(env, "DB_POOL_SIZE", 10)
    pool_timeout = _int(env, "DB_POOL_TIMEOUT", 30)
    for key, value in (("DB_POOL_SIZE", pool_size),
                       ("DB_POOL_TIMEOUT", pool_timeout)):
        if value <= 0:
            raise ConfigError(f"{key} must be positive")
    max_overflow = _int(env, "DB_MAX_OVERFLOW", 10)
    if max_overflow < 0:
        raise ConfigError("DB_MAX_OVERFLOW must not be negative")
    gate_limit = None
    if env.get("DB_GATE_LIMIT"):
        gate_limit = _int(env, "DB_GATE_LIMIT", 0)
        if gate_limit <= 0:
            raise ConfigError("DB_GATE_LIMIT must be positive")

    return Settings(
        database_url=database_url,
        qr_secret=secret,
        qr_expiration_minutes=minutes,
        qr_max_length=max_length,
        lock_backend=backend,
        lock_timeout=lock_timeout,
        redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
        redis_max_conn=_int(env, "REDIS_MAX_CONN", 512),
        session_secret=env.get("SESSION_SECRET", "dev-secret-change-me"),
        admin_username=env.get("ADMIN_USERNAME", "admin"),
        admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
        public_scan_url=env.get("PUBLIC_SCAN_URL") or None,
        db_pool_size=pool_size,
        db_max_overflow=max_overflow,
        db_pool_timeout=pool_timeout,
        db_gate_limit=gate_limit,
    )


def load_settings_or_exit() -> Settings:
    try:
        return load_settings()
    except ConfigError as e:
        print(f"CONFIG ERROR: {e}")
        sys.exit(1)


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
