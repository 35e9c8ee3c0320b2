from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Host forum database (users, user_emails, user_options, unsubscribe_keys)
    DATABASE_URL: str = "postgresql://localhost:5432/discourse"

    # Redis (intent tokens, fire-once ledger, task queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # =================================================================
    # UNSUB UPDATE POSTBACK
    # =================================================================
    UNSUB_UPDATE_ENABLED: bool = True
    UNSUB_UPDATE_ENDPOINT_URL: str = "https://ai.templetrends.com/unsub_update.php"
    UNSUB_UPDATE_MIN_MINUTES_SINCE_REGISTRATION: int = 10
    UNSUB_UPDATE_SHARED_SECRET: str = ""  # sent as form field "secret"
    UNSUB_UPDATE_OPEN_TIMEOUT_SECONDS: float = 5.0
    UNSUB_UPDATE_READ_TIMEOUT_SECONDS: float = 10.0

    # Skip repeat postbacks for the same (event, user) pair
    UNSUB_UPDATE_FIRE_ONCE_ENABLED: bool = True
    UNSUB_UPDATE_RECORD_LAST_SENT: bool = True

    # Variant flags
    UNSUB_UPDATE_FORCE_DIGEST_NEVER_ON_NO_MAIL: bool = False
    UNSUB_UPDATE_POSTBACK_ON_EMAIL_LEVEL_NEVER: bool = True
    UNSUB_UPDATE_POSTBACK_ON_DIGEST_NEVER: bool = True
    UNSUB_UPDATE_HOOK_ONLY_ON_POST: bool = True

    # Shared secret the host uses to sign calls to /hooks/*
    UNSUB_UPDATE_HOOK_SECRET: str | None = None

    # Host email_level encoding (name -> stored ordinal)
    EMAIL_LEVELS: dict[str, int] = {"always": 0, "only_when_away": 1, "never": 2}

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 5
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        The bridge only runs a handful of short reads per event, so development
        gets a smaller pool.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"max_size": min(self.DB_POOL_MAX_SIZE, 3), "timeout": 15.0})

        return config


settings = Settings()
