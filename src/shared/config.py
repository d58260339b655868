"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for Smart Health Hub.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Distributed cache (Redis) connection settings
- Cache tier, TTL and warm-up policy settings
"""
import re
from typing import Optional
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Distributed cache configuration settings.

    No URL means the distributed tier is disabled and the cache runs
    memory-only.
    """

    redis_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("REDIS_URL", "REDISCLOUD_URL", "REDISTOGO_URL"),
    )
    redis_socket_timeout: Optional[float] = Field(5.0, validation_alias="REDIS_SOCKET_TIMEOUT")
    redis_connect_timeout: Optional[float] = Field(5.0, validation_alias="REDIS_CONNECT_TIMEOUT")
    redis_reconnect_interval: float = Field(5.0, validation_alias="REDIS_RECONNECT_INTERVAL")
    redis_scan_batch_size: int = Field(500, validation_alias="REDIS_SCAN_BATCH_SIZE")

    @field_validator("redis_url", mode="before")
    @classmethod
    def empty_url_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("redis_scan_batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1:
            raise ValueError("Scan batch size must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


class CacheSettings(BaseSettings):
    """Cache tier and warm-up policy settings."""

    cache_default_ttl: int = Field(300, validation_alias="CACHE_DEFAULT_TTL")
    cache_memory_max_size: int = Field(10000, validation_alias="CACHE_MEMORY_MAX_SIZE")
    cache_check_period: int = Field(60, validation_alias="CACHE_CHECK_PERIOD")
    cache_serialization_format: str = Field("json", validation_alias="CACHE_SERIALIZATION_FORMAT")

    # Response cache
    cache_response_ttl: int = Field(60, validation_alias="CACHE_RESPONSE_TTL")

    # Warm-up
    cache_warm_up_enabled: bool = Field(True, validation_alias="CACHE_WARM_UP_ENABLED")
    cache_warm_up_interval: int = Field(300, validation_alias="CACHE_WARM_UP_INTERVAL")

    @field_validator("cache_default_ttl", "cache_check_period", "cache_response_ttl")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @field_validator("cache_memory_max_size", "cache_warm_up_interval")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("cache_serialization_format")
    @classmethod
    def validate_serialization_format(cls, v):
        if v not in ("json", "pickle"):
            raise ValueError("Serialization format must be 'json' or 'pickle'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    log_level: LogLevel = Field(LogLevel.INFO, validation_alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


class Settings(BaseSettings):
    """Main application settings."""

    # Application settings
    environment: Environment = Field(Environment.DEVELOPMENT, validation_alias="ENVIRONMENT")
    debug: bool = Field(True, validation_alias="DEBUG")
    app_name: str = Field("Smart Health Hub", validation_alias="APP_NAME")
    app_version: str = Field("1.0.0", validation_alias="APP_VERSION")

    # Component settings
    redis: RedisSettings = RedisSettings()
    cache: CacheSettings = CacheSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if hasattr(info, 'data') and info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.
    This function can be used as a FastAPI dependency.
    """
    return settings


def get_redis_settings() -> RedisSettings:
    """Get Redis settings."""
    return settings.redis


def get_cache_settings() -> CacheSettings:
    """Get cache settings."""
    return settings.cache


def mask_redis_url(redis_url: Optional[str]) -> Optional[str]:
    """Hide the password component of a Redis URL for logging."""
    if not redis_url:
        return redis_url
    return re.sub(r"(rediss?://[^:/@]*:)([^@]*)(@)", r"\1********\3", redis_url)


def get_config_summary(config: Optional[Settings] = None) -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Args:
        config: Settings to summarize; defaults to the global settings

    Returns:
        Dictionary with configuration summary
    """
    settings_ = config or settings
    return {
        "environment": settings_.environment,
        "debug": settings_.debug,
        "app_name": settings_.app_name,
        "app_version": settings_.app_version,
        "redis": {
            "configured": bool(settings_.redis.redis_url),
            "url": mask_redis_url(settings_.redis.redis_url),
        },
        "cache": {
            "default_ttl": settings_.cache.cache_default_ttl,
            "memory_max_size": settings_.cache.cache_memory_max_size,
            "serialization_format": settings_.cache.cache_serialization_format,
            "warm_up_enabled": settings_.cache.cache_warm_up_enabled,
            "warm_up_interval": settings_.cache.cache_warm_up_interval,
            "response_ttl": settings_.cache.cache_response_ttl,
        },
        "monitoring": {
            "log_level": settings_.monitoring.log_level,
        },
    }
