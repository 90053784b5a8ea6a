"""Configuration for csaf-walker using pydantic-settings.

All settings are driven by environment variables with the CSAF_WALKER_ prefix,
optionally read from a .env file.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


class SignaturePolicy(str, Enum):
    """How a missing or unverifiable signature affects the overall status."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    IGNORE = "ignore"


class ValidationProfile(str, Enum):
    """Which rule families run after the schema step."""

    SCHEMA = "schema"
    MANDATORY = "mandatory"
    OPTIONAL = "optional"


class Settings(BaseSettings):
    """Walker configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CSAF_WALKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    cache_dir: Path = Path(".csaf-walker")
    store_dir: Optional[Path] = None

    user_agent: str = f"csaf-walker/{__version__}"
    timeout_total: float = 30.0

    max_concurrency: int = 8
    retry_limit: int = 3
    backoff_multiplier: float = 0.5
    backoff_min: float = 0.5
    backoff_max: float = 10.0

    signature_policy: SignaturePolicy = SignaturePolicy.REQUIRED
    trusted_keys: List[Path] = []
    trusted_fingerprints: List[str] = []
    hash_algorithms: List[str] = ["sha256", "sha512"]

    validation_profile: ValidationProfile = ValidationProfile.MANDATORY
    validation_rules: Optional[List[str]] = None
    schema_path: Optional[Path] = None
    validation_timeout: Optional[float] = None

    since: Optional[datetime] = None
    revalidate_on_config_change: bool = True

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrency must be at least 1")
        return value

    @field_validator("retry_limit")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry_limit must not be negative")
        return value

    @field_validator("validation_timeout")
    @classmethod
    def _positive_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("validation_timeout must be positive")
        return value

    @field_validator("hash_algorithms")
    @classmethod
    def _known_algorithms(cls, value: List[str]) -> List[str]:
        normalized = [a.lower() for a in value]
        supported = [a for a in normalized if a in hashlib.algorithms_available]
        if len(supported) != len(normalized):
            logger.warning(
                "Skipping unsupported hash algorithm(s): %s",
                sorted(set(normalized) - set(supported)),
            )
        if not supported:
            raise ValueError("hash_algorithms must list at least one supported algorithm")
        return supported

    @field_validator("trusted_fingerprints")
    @classmethod
    def _normalize_fingerprints(cls, value: List[str]) -> List[str]:
        return [fp.replace(" ", "").upper() for fp in value]

    def ensure_dirs(self) -> None:
        """Create the cache (and store) directories if they don't exist."""
        dirs = [self.cache_dir]
        if self.store_dir is not None:
            dirs.append(self.store_dir)
        for path in dirs:
            path.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured directory: %s", path)


def get_settings(**overrides) -> Settings:
    """Load settings from environment and ensure working directories exist."""
    s = Settings(**overrides)
    s.ensure_dirs()
    return s
