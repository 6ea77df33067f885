import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    db_lock_timeout_seconds: float
    auth_user_header: str
    log_level: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number of seconds (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///trialdocs.db"),
        db_lock_timeout_seconds=_getfloat("DB_LOCK_TIMEOUT_SECONDS", 10.0),
        auth_user_header=_getenv("AUTH_USER_HEADER", "X-Authenticated-User-Id"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        # bounds how long a transaction may wait on a row/database lock
        "DB_LOCK_TIMEOUT_SECONDS": s.db_lock_timeout_seconds,
        # identity provider hands us an already-authenticated user id in this header
        "AUTH_USER_HEADER": s.auth_user_header,
        "LOG_LEVEL": s.log_level,
    }
