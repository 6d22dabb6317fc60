"""
Engine configuration via pydantic-settings.

Settings are read from ``EAGERLOAD_*`` environment variables (nested fields use
``__``, e.g. ``EAGERLOAD_RETRY__MAX_ATTEMPTS=5``) or built from the host's
configuration mapping with :meth:`EngineSettings.from_mapping`, which accepts
the camelCase surface (``maxBatchSize``, ``retry.baseDelayMs`` ...).
"""

import re
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class RetrySettings(BaseModel):
    """Retry behaviour for fetcher invocations."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: float = Field(default=50.0, ge=0)
    max_delay_ms: float = Field(default=2000.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter: bool = True


class CacheSettings(BaseModel):
    """Result cache mode and expiry."""

    mode: Literal["scoped", "shared-ttl"] = "scoped"
    ttl_ms: float = Field(default=60000.0, gt=0)
    # Negative entries expire with ttl_ms unless set
    error_ttl_ms: Optional[float] = Field(default=None, gt=0)
    max_entries: Optional[int] = Field(default=None, ge=1)


class EngineSettings(BaseSettings):
    """Top-level engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EAGERLOAD_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Passed by the host to configure_logging()
    log_level: str = "info"

    max_batch_size: int = Field(default=100, ge=1)
    max_concurrent_fetches: int = Field(default=10, ge=1)
    per_type_concurrency: Dict[str, int] = Field(default_factory=dict)
    fetch_timeout_ms: Optional[float] = Field(default=None, gt=0)

    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @property
    def fetch_timeout(self) -> Optional[float]:
        """Per-attempt fetch timeout in seconds."""
        if self.fetch_timeout_ms is None:
            return None
        return self.fetch_timeout_ms / 1000.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineSettings":
        """Build settings from a host mapping using camelCase or snake_case keys."""
        return cls(**_snake_case_keys(data))


def _snake_case_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    converted: Dict[str, Any] = {}
    for key, value in data.items():
        name = _CAMEL_RE.sub("_", key).lower()
        if isinstance(value, Mapping) and name != "per_type_concurrency":
            value = _snake_case_keys(value)
        converted[name] = value
    return converted


def get_settings(**overrides: Any) -> EngineSettings:
    """Read settings from the environment, applying keyword overrides."""
    return EngineSettings(**overrides)
