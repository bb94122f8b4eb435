"""
Shared configuration management for Streampulse services.
"""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_JWT_SECRET = "change-me"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PULSE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Security
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    collector_api_key: Optional[str] = Field(default=None)

    # External services
    telemetry_service_url: str = Field(default="http://localhost:8020")
    telemetry_timeout_seconds: float = Field(default=5.0)

    # Connections
    max_ws_connections: int = Field(default=1000)
    delivery_timeout_seconds: float = Field(default=5.0)

    # Supervisor
    anonymous_timeout_seconds: int = Field(default=1800)
    sweep_interval_seconds: int = Field(default=30)
    max_reconnect_attempts: int = Field(default=5)
    reconnect_base_delay_seconds: float = Field(default=1.0)
    reconnect_max_delay_seconds: float = Field(default=30.0)

    # Snapshot TTLs (seconds)
    streamer_snapshot_ttl: int = Field(default=60)
    game_snapshot_ttl: int = Field(default=300)
    global_trends_snapshot_ttl: int = Field(default=300)
    viewer_count_snapshot_ttl: int = Field(default=30)

    @model_validator(mode="after")
    def require_signing_secret(self):
        """Refuse the placeholder signing secret outside local development."""
        if self.env != "local" and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise ValueError("PULSE_JWT_SECRET must be set outside the local environment")
        return self


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
