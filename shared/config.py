"""
Shared configuration management for the Document Gateway.
"""

from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOCS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Datastore
    mongodb_uri: str = Field(default="mongodb://localhost:27017")
    mongodb_max_pool_size: int = Field(default=10)
    mongodb_server_selection_timeout_ms: int = Field(default=5000)
    mongodb_socket_timeout_ms: int = Field(default=45000)
    allowed_databases: List[str] = Field(default_factory=list)

    # Cache
    cache_default_ttl_seconds: float = Field(default=300)
    cache_ttl_rules: Dict[str, float] = Field(default_factory=lambda: {"utiles/products": 600})
    cache_sweep_interval_seconds: float = Field(default=600)

    # Orders
    orders_database: str = Field(default="utiles")
    orders_collection: str = Field(default="orders")
    products_collection: str = Field(default="products")

    # HTTP
    cors_origins: List[str] = Field(default_factory=list)

    @property
    def is_local(self) -> bool:
        return self.env == "local"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
