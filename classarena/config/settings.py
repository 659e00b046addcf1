"""
Settings

Centralized configuration for the tournament service.
All values are loaded from environment variables (a local .env file is
honoured through python-dotenv).
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on garbage."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_str_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a string value from environment variable."""
    value = os.getenv(key)
    return value if value not in (None, "") else default


class Settings:
    """
    Application settings.

    To add a new setting:
    1. Add it here as a class attribute
    2. Load it from an environment variable
    3. Read it through Settings, never os.getenv, in service code
    """

    # Storage
    DATABASE_URL: str = get_str_env("DATABASE_URL", "sqlite+aiosqlite:///./classarena.db")
    SQL_ECHO: bool = get_bool_env("SQL_ECHO", False)

    # Auth
    JWT_SECRET_KEY: str = get_str_env("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = get_str_env("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 30)

    # Logging
    LOG_LEVEL: str = get_str_env("LOG_LEVEL", "INFO")

    # Tournament defaults (used when the create request omits a value)
    DEFAULT_TIME_PER_QUESTION: int = get_int_env("TOURNAMENT_TIME_PER_QUESTION", 30)
    DEFAULT_QUESTIONS_PER_MATCH: int = get_int_env("TOURNAMENT_QUESTIONS_PER_MATCH", 3)
    DEFAULT_MAX_PARTICIPANTS: int = get_int_env("TOURNAMENT_MAX_PARTICIPANTS", 16)
    DEFAULT_POINTS_PER_WIN: int = get_int_env("TOURNAMENT_POINTS_PER_WIN", 100)
    DEFAULT_REWARD_FIRST: int = get_int_env("TOURNAMENT_REWARD_FIRST", 100)
    DEFAULT_REWARD_SECOND: int = get_int_env("TOURNAMENT_REWARD_SECOND", 50)
    DEFAULT_REWARD_THIRD: int = get_int_env("TOURNAMENT_REWARD_THIRD", 25)
    DEFAULT_REWARD_PARTICIPATION: int = get_int_env("TOURNAMENT_REWARD_PARTICIPATION", 10)
    DEFAULT_TIE_BREAK_MODE: str = get_str_env("TOURNAMENT_TIE_BREAK_MODE", "COIN_FLIP")

    # Concurrency
    CONFLICT_MAX_RETRIES: int = get_int_env("TOURNAMENT_CONFLICT_MAX_RETRIES", 3)
    TRANSIENT_MAX_RETRIES: int = get_int_env("TOURNAMENT_TRANSIENT_MAX_RETRIES", 1)

    # HTTP
    CORS_ORIGINS: str = get_str_env("CORS_ORIGINS", "*")
    RATE_LIMIT_ENABLED: bool = get_bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_DEFAULT: str = get_str_env("RATE_LIMIT_DEFAULT", "120/minute")

    @classmethod
    def cors_origins(cls) -> list:
        return [origin.strip() for origin in cls.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
