"""
Shared configuration management for the edge resilience layer.

Settings are read once at process start and frozen afterwards; components
receive them through their constructors instead of reading globals.
"""

from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """Response cache settings (``EDGE_CACHE_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    enabled: bool = False
    driver: str = "redis"
    ttl: int = 300
    route_ttls: Dict[str, int] = Field(default_factory=dict)
    route_tags: Dict[str, List[str]] = Field(default_factory=dict)
    per_user: bool = False
    cache_authenticated: bool = False
    track_metrics: bool = True
    vary_headers: List[str] = Field(default_factory=list)
    cacheable_content_types: List[str] = Field(
        default_factory=lambda: [
            "application/json",
            "application/xml",
            "application/vnd.api+json",
        ]
    )
    mutation_methods: List[str] = Field(
        default_factory=lambda: ["POST", "PUT", "PATCH", "DELETE"]
    )

    # Dynamic tagging
    dynamic_tags: bool = True
    ignore_segments: List[str] = Field(
        default_factory=lambda: ["api", "v1", "v2", "v3", "v4"]
    )
    normalize_ids: bool = True
    max_depth: int = 5

    excluded_paths: List[str] = Field(
        default_factory=lambda: [
            "/health",
            "/metrics",
            "/api/v1/cache",
            "/api/v1/circuit-breakers",
        ]
    )
    key_prefix: str = "edge:api:"


class CircuitBreakerSettings(BaseSettings):
    """Circuit breaker settings (``EDGE_CIRCUIT_BREAKER_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_CIRCUIT_BREAKER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    enabled: bool = False
    failure_threshold: int = 5
    timeout: int = 60
    scope: str = "endpoint"
    slow_threshold_ms: float = 5000
    error_codes: List[int] = Field(default_factory=lambda: [500, 502, 503, 504])
    fallback_status_code: int = 503
    record_ttl: int = 3600
    half_open_single_trial: bool = True
    excluded_paths: List[str] = Field(
        default_factory=lambda: ["/health", "/metrics", "/api/v1/circuit-breakers"]
    )
    key_prefix: str = "edge:circuit:"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    redis_url: str = "redis://localhost:6379/0"
    origin_url: str = "http://localhost:8080"
    origin_timeout_seconds: float = 30.0

    cache: CacheSettings = Field(default_factory=CacheSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
