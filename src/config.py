"""
Configuration module for the Addon Manager controller.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class KubeConfig:
    """Cluster access configuration."""

    kubeconfig: Optional[str] = None  # None = in-cluster, then default kubeconfig
    watch_namespace: str = "addon-manager-system"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            watch_namespace=os.getenv("WATCH_NAMESPACE", "addon-manager-system"),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration for failed reconciles
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 1000.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Maximum time an addon may stay non-terminal before it is failed
    addon_ttl: int = 3600  # seconds

    # Server-side timeout for a single watch request
    watch_timeout_seconds: int = 300

    # How long workers wait for the informer caches to fill at startup
    cache_sync_timeout: float = 120.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1.0")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000.0")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            addon_ttl=int(os.getenv("ADDON_TTL_SECONDS", "3600")),
            watch_timeout_seconds=int(os.getenv("WATCH_TIMEOUT_SECONDS", "300")),
            cache_sync_timeout=float(os.getenv("CACHE_SYNC_TIMEOUT", "120")),
        )


@dataclass
class ServerConfig:
    """Health probe server and logging configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("HEALTH_HOST", "0.0.0.0"),
            port=int(os.getenv("HEALTH_PORT", "8081")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    kube: KubeConfig
    controller: ControllerConfig
    server: ServerConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kube=KubeConfig.from_env(),
            controller=ControllerConfig.from_env(),
            server=ServerConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kube=KubeConfig(),
            controller=ControllerConfig(),
            server=ServerConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
