"""
Configuration management for the Dashlink backend
Loads settings from environment variables
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = True

    # Device gateway (the MVR command backend)
    cwe_mvr_api_url: str = ""  # Empty string if not set - raises MissingGatewayConfigError on use
    cwe_mvr_api_key: str = ""
    gateway_timeout_seconds: float = 15.0

    # Live streaming
    stream_poll_interval_seconds: float = 2.0
    stream_poll_max_attempts: int = 10
    stream_period_seconds: int = 0  # 0 = stream until stopped
    hls_path_template: str = "/hls/{serial}/{camera}/{profile}/stream.m3u8"

    # Clip requests
    clip_min_seconds: int = 5
    clip_max_seconds: int = 300

    # Clip storage / query service
    database_url: str = "sqlite:///./dashlink.db"
    storage_url: str = ""  # e.g. "https://<project>.supabase.co"
    storage_api_key: str = ""
    storage_bucket: str = "clips"
    realtime_url: str = ""  # e.g. "wss://<project>.supabase.co/realtime/v1/websocket"
    signed_url_expiry_seconds: int = 3600
    signed_url_refresh_margin_seconds: int = 300

    # CORS Settings
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    cors_allow_credentials: bool = True

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings"""
    return settings
