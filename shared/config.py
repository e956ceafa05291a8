"""
Shared configuration management for Tracker Studio services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TRACKERS_",
        case_sensitive=False,
        extra="allow"
    )
    
    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    
    # Storage
    store_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/trackers")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)
    
    # Insights cache
    insights_cache_backend: str = Field(default="memory", description="memory or redis")
    insights_cache_ttl_seconds: int = Field(default=300)
    redis_url: str = Field(default="redis://localhost:6379/0")
    
    # Security
    jwt_secret: str = Field(default="local-dev-secret")
    jwt_algorithm: str = Field(default="HS256")
    jwt_audience: Optional[str] = Field(default=None)
    
    # Permission resolution feature flags
    enable_creator_rights: bool = Field(default=True)
    enable_entity_grants: bool = Field(default=True)
    
    # Reminder policy
    reminder_quiet_hours_start: str = Field(default="22:00")
    reminder_quiet_hours_end: str = Field(default="07:00")
    reminder_schedule_window_minutes: int = Field(default=5)
    reminder_daily_cap_per_owner: int = Field(default=3)
    
    # Templates
    template_name_conflict_attempts: int = Field(default=99)
    
    # Tracing
    enable_tracing: bool = Field(default=False)
    enable_console_tracing: bool = Field(default=False)
    otel_exporter_endpoint: Optional[str] = Field(default=None, description="OTLP gRPC endpoint")


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
