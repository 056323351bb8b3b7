"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./crm_chat.db"

    # Security Configuration
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Messaging gateway (Evolution API)
    gateway_base_url: str = "http://localhost:8080"
    gateway_api_key: str = ""
    gateway_instance_name: str = "default"
    gateway_timeout_seconds: float = 10.0
    public_api_url: str = "http://localhost:8000"

    # Socket layer
    socket_cors_origin: str = "http://localhost:3000"

    # Connection health monitor
    health_check_interval_seconds: float = 30.0
    run_health_monitor: bool = True

    # Outbound delivery queue
    delivery_max_attempts: int = 3
    delivery_backoff_base_seconds: float = 5.0
    delivery_backoff_max_seconds: float = 300.0
    delivery_concurrency: int = 5
    delivery_poll_interval_seconds: float = 1.0
    delivery_stall_timeout_seconds: float = 120.0
    run_delivery_workers: bool = True

    # Redis fan-out for out-of-process workers
    redis_url: str = "redis://localhost:6379/0"
    redis_fanout_enabled: bool = False
    redis_events_channel: str = "crm-chat:events"

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True
    otlp_endpoint: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def webhook_url(self) -> str:
        """Callback URL the gateway posts inbound events to."""
        return f"{self.public_api_url.rstrip('/')}/api/whatsapp/webhook"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.socket_cors_origin.split(",") if origin.strip()]


# Global settings instance
settings = Settings()
