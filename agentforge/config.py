"""Configuration management for the agent runtime."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from agentforge.core.errors import ConfigurationError

T = TypeVar("T")


def _parse(name: str, default: Optional[T], cast: Callable[[str], T]) -> Optional[T]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}", context={"variable": name}) from exc


@dataclass(frozen=True)
class StorageConfig:
    """State store backend selection."""

    type: str = "memory"
    ttl: Optional[float] = None
    max_size: Optional[int] = None


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    environment: str = "development"
    log_level: str = "INFO"
    heartbeat_interval: float = 30.0
    max_retries: int = 1
    retry_delay_ms: float = 1000
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        max_retries = _parse("AGENTFORGE_MAX_RETRIES", 1, int)
        if max_retries < 1:
            raise ConfigurationError("AGENTFORGE_MAX_RETRIES must be at least 1")
        heartbeat = _parse("AGENTFORGE_HEARTBEAT_INTERVAL", 30.0, float)
        if heartbeat <= 0:
            raise ConfigurationError("AGENTFORGE_HEARTBEAT_INTERVAL must be positive")

        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("AGENTFORGE_LOG_LEVEL", "INFO").upper(),
            heartbeat_interval=heartbeat,
            max_retries=max_retries,
            retry_delay_ms=_parse("AGENTFORGE_RETRY_DELAY_MS", 1000.0, float),
            storage=StorageConfig(
                type=os.getenv("AGENTFORGE_STORAGE", "memory"),
                ttl=_parse("AGENTFORGE_STORAGE_TTL", None, float),
                max_size=_parse("AGENTFORGE_STORAGE_MAX_SIZE", None, int),
            ),
        )


# Global config instance
config = Config.from_env()
