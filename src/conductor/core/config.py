"""
conductor.core.config - Configuration Management
==================================================

This module provides the configuration system for Conductor. Configuration
can be loaded from multiple sources with the following priority (highest first):

    1. Explicit constructor arguments
    2. Environment variables (prefixed with CONDUCTOR_)
    3. YAML configuration file (conductor.yaml)
    4. Default values defined in the models below

Architecture Context:
    Configuration flows DOWN through the system. The top-level ConductorConfig
    is created once and handed to the Executor, which passes the relevant
    values to the components it builds:

        ConductorConfig
            ├── CacheConfig      → step result caching (TTL, key prefix)
            └── (other settings) → agent timeouts, scoring, suspension TTL

Usage:
    # Load from environment variables:
    config = ConductorConfig()

    # Load from YAML file:
    config = load_config("conductor.yaml")

    # Explicit overrides:
    config = ConductorConfig(log_level="DEBUG", default_agent_timeout_seconds=5)

Environment Variables:
    CONDUCTOR_LOG_LEVEL=DEBUG
    CONDUCTOR_ENVIRONMENT=prod
    CONDUCTOR_DEFAULT_AGENT_TIMEOUT_SECONDS=10
    CONDUCTOR_CACHE__DEFAULT_TTL_SECONDS=600
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings

from conductor.core.exceptions import ConfigurationError


# =============================================================================
# Cache Configuration
# =============================================================================
# Controls the step-result cache. Caching is opt-in per step (a step must
# declare a ``cache`` block); these values provide the defaults for the
# steps that do.
# =============================================================================
class CacheConfig(BaseModel):
    """Configuration for step result caching.

    Attributes:
        enabled: Master switch. When False, cache blocks on steps are ignored.
        default_ttl_seconds: TTL used when a step's cache block has no ttl.
        key_prefix: Namespace prefix for every cache key.
    """

    enabled: bool = Field(default=True, description="Enable step result caching")
    default_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Default TTL for cached step results",
    )
    key_prefix: str = Field(
        default="conductor:cache:",
        description="Prefix for all cache keys",
    )


# =============================================================================
# Main Configuration
# =============================================================================
# Environment Variable Mapping:
#   CONDUCTOR_LOG_LEVEL                  → config.log_level
#   CONDUCTOR_ENVIRONMENT                → config.environment
#   CONDUCTOR_CACHE__DEFAULT_TTL_SECONDS → config.cache.default_ttl_seconds
# =============================================================================
class ConductorConfig(BaseSettings):
    """Top-level configuration for the Conductor engine.

    Attributes:
        environment: Deployment environment.
        log_level: Python logging level. Structured logs use structlog.
        default_agent_timeout_seconds: Deadline for a single agent attempt
            when the step does not declare its own ``timeout``.
        resumption_ttl_seconds: How long a suspended execution stays
            resumable.
        scoring_retry_delay_seconds: Initial backoff between scoring retries.
        default_score_threshold: Minimum score used when neither the step nor
            the ensemble declares one.
        cache: Step result cache configuration (see CacheConfig).

    Example:
        >>> config = ConductorConfig(
        ...     environment="dev",
        ...     default_agent_timeout_seconds=5,
        ...     cache=CacheConfig(default_ttl_seconds=60),
        ... )
    """

    # -------------------------------------------------------------------------
    # General Settings
    # -------------------------------------------------------------------------
    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment (affects defaults and verbosity)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )

    # -------------------------------------------------------------------------
    # Execution Settings
    # -------------------------------------------------------------------------
    default_agent_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-attempt agent deadline when a step sets no timeout",
    )
    resumption_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="Lifetime of a suspended execution",
    )
    scoring_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff between scoring retries",
    )
    default_score_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Fallback minimum score for scored steps",
    )

    # -------------------------------------------------------------------------
    # Nested Configurations
    # -------------------------------------------------------------------------
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Step result cache configuration",
    )

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    #   - env_prefix: All env vars start with "CONDUCTOR_"
    #   - env_nested_delimiter: Use "__" for nested configs
    #     (e.g., CONDUCTOR_CACHE__KEY_PREFIX maps to config.cache.key_prefix)
    #   - case_sensitive: Env vars are case-insensitive
    # -------------------------------------------------------------------------
    model_config = {
        "env_prefix": "CONDUCTOR_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> ConductorConfig:
    """Load Conductor configuration from a YAML file and/or environment variables.

    Args:
        path: Path to a YAML configuration file. If None, looks for
            'conductor.yaml' in the current directory. If that doesn't
            exist either, uses pure defaults + environment variables.

    Returns:
        A fully validated ConductorConfig instance.

    Raises:
        ConfigurationError: If the YAML file is malformed or its values fail
            validation.
        FileNotFoundError: If an explicit path is provided but doesn't exist.

    Example:
        >>> config = load_config("conductor.yaml")
        >>> config = load_config()  # auto-detect or use defaults
    """
    if path is None:
        default_path = Path("conductor.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_path) as f:
            try:
                raw_data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    message=f"Invalid YAML in {path}: {exc}",
                    details={"path": str(path)},
                ) from exc
            if raw_data is not None and not isinstance(raw_data, dict):
                raise ConfigurationError(
                    message=f"Configuration file {path} must contain a mapping",
                    details={"path": str(path)},
                )
            yaml_data = raw_data or {}

    try:
        return ConductorConfig(**yaml_data)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            message=f"Invalid configuration values: {exc.error_count()} error(s)",
            details={"path": path, "errors": exc.errors(include_url=False)},
        ) from exc


def get_default_config() -> ConductorConfig:
    """Create a ConductorConfig with all defaults (overridden by any set env vars)."""
    return ConductorConfig()
