from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    # Message service storage
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "dmsync"

    # Change feed transport; empty disables Redis and falls back to in-process fan-out
    redis_url: str = ""
    feed_table: str = "direct_messages"

    # Auth
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Sync client
    api_base_url: str = "http://localhost:8000"
    http_timeout: float = 10.0
    refresh_interval: float = 30.0

    preview_length: int = 200
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
