"""Settings module for the uconfig service."""

import os

from uconfig.database.postgres import PostgresConfig


def _read_secret(secret_name: str, env_name: str, default: str | None = None) -> str | None:
    """Read a value from a Docker secret, falling back to the environment."""
    secret_path = f"/run/secrets/{secret_name}"
    try:
        with open(secret_path) as f:
            return f.read().strip()
    except FileNotFoundError:
        return os.getenv(env_name, default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def postgres_config() -> PostgresConfig:
    """PostgreSQL connection parameters from DB_* variables and the db_password secret."""
    return PostgresConfig(
        host=os.getenv("DB_HOST", "localhost"),
        port=int(os.getenv("DB_PORT", "5432")),
        database=os.getenv("DB_NAME", "uconfig"),
        user=os.getenv("DB_USER", "uconfig"),
        password=_read_secret("db_password", "DB_PASSWORD", "") or "",
        max_conn=int(os.getenv("DB_POOL_MAX", "10")),
    )


class RedisConfig:
    """Redis configuration for the shared configuration cache."""

    def __init__(self) -> None:
        self.host = os.getenv("REDIS_HOST", "localhost")
        self.port = int(os.getenv("REDIS_PORT", "6379"))
        self.db = int(os.getenv("REDIS_DB", "0"))
        self.password = _read_secret("redis_password", "REDIS_PASSWORD")


class CacheConfig:
    """Configuration cache behaviour."""

    def __init__(self) -> None:
        self.enabled = _env_bool("UCONFIG_CACHE_ENABLED", True)
        self.ttl = int(os.getenv("UCONFIG_CACHE_TTL", "3600"))
        # redis | memory
        self.driver = os.getenv("UCONFIG_CACHE_DRIVER", "redis").strip().lower()
        self.lock_timeout = float(os.getenv("UCONFIG_LOCK_TIMEOUT", "10"))
        self.lock_wait = float(os.getenv("UCONFIG_LOCK_WAIT", "3"))


class EncryptionConfig:
    """Encryption of values at rest."""

    def __init__(self) -> None:
        self.key = _read_secret("uconfig_encryption_key", "UCONFIG_ENCRYPTION_KEY")

    @property
    def is_configured(self) -> bool:
        """Check if an encryption key is available."""
        return bool(self.key)


class Settings:
    """Application settings."""

    def __init__(self) -> None:
        # Service info
        self.environment = os.getenv("ENVIRONMENT", "dev")
        self.service_name = os.getenv("SERVICE_NAME", "uconfig")
        self.service_version = os.getenv("SERVICE_VERSION", "0.1.0")
        self.log_level = os.getenv("LOG_LEVEL", "info")
        self.log_to_db = _env_bool("UCONFIG_LOG_TO_DB", False)

        self.postgres = postgres_config()
        self.redis = RedisConfig()
        self.cache = CacheConfig()
        self.encryption = EncryptionConfig()
