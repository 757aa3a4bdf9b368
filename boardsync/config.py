"""Configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # JWT settings
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # WebSocket settings
    ws_max_message_size: int = 65536  # 64KB max message size
    ws_receive_timeout: float = 45.0
    ws_ping_interval: float = 30.0
    ws_token_revalidation_interval: float = 1800.0
    ws_rate_limit_messages: int = 100  # Max messages per window
    ws_rate_limit_window: float = 10.0

    # Persistence service (REST API owning workspaces, lists, todos, labels)
    # Empty string disables workspace membership checks on join
    persistence_api_url: str = ""
    persistence_timeout: float = 10.0

    # Room authorization cache
    room_auth_cache_ttl: float = 300.0  # 5 minutes
    room_auth_cache_max_size: int = 50000

    # Client reconnect policy
    client_reconnect_attempts: int = 5
    client_reconnect_interval: float = 3.0
    client_reconnect_max_delay: float = 30.0


# Global settings instance
settings = Settings()
