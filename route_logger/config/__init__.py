"""Configuration management for route_logger.

Loads settings from environment variables using pydantic-settings. Values
are resolved with a fixed precedence: per-call overrides, then the host
framework's configuration (``app.state.route_logger``), then the
module-level configuration.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from route_logger.exceptions import ConfigurationError

DEFAULT_TAG = "Grape"
DEFAULT_CONTROLLER_PREFIX = "app/api/"
PRODUCTION_ENVIRONMENTS = frozenset({"production", "prod"})

logger = logging.getLogger(__name__)

_ENV_LOADED = False
_ENV_LOCK = Lock()
_CONFIG_LOCK = Lock()
_config: "RouteLoggerConfig | None" = None
_fallback_warned = False


def _resolve_env_file() -> str | None:
    """Locate the .env file regardless of the current working directory.

    Preference order:
        1. ROUTE_LOGGER_ENV_FILE environment variable (explicit override)
        2. Current working directory
    """
    override = os.getenv("ROUTE_LOGGER_ENV_FILE")
    if override:
        override_path = Path(override).expanduser()
        if override_path.is_file():
            return str(override_path)

    cwd_candidate = Path.cwd() / ".env"
    if cwd_candidate.is_file():
        return str(cwd_candidate)

    return None


def ensure_env_loaded() -> None:
    """Load environment variables from disk exactly once."""
    global _ENV_LOADED

    with _ENV_LOCK:
        if _ENV_LOADED:
            return

        env_path = _resolve_env_file()
        if env_path:
            load_dotenv(env_path, override=False)

        _ENV_LOADED = True


class RouteLoggerConfig(BaseSettings):
    """Settings for the request logging middleware.

    ``logger`` and ``subscriber_class`` hold Python objects and are only ever
    set in code, never read from the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROUTE_LOGGER_",
        case_sensitive=False,
        extra="ignore",
        arbitrary_types_allowed=True,
        populate_by_name=True,
        validate_assignment=True,
    )

    # ========== Gate ==========
    enabled: bool = True

    # ========== Output ==========
    tag: str | None = DEFAULT_TAG
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ROUTE_LOGGER_ENVIRONMENT", "APP_ENV"),
    )
    log_level: str = "INFO"
    logger: Any = Field(default=None, exclude=True)
    subscriber_class: Any = Field(default=None, exclude=True)

    # ========== Extraction ==========
    app_root: str | None = None
    controller_prefix: str = DEFAULT_CONTROLLER_PREFIX
    filter_parameters: list[Any] = Field(default_factory=list)
    max_captured_body: int = Field(default=64 * 1024, ge=0)

    # ========== Tracing ==========
    trace: bool = Field(
        default=False,
        validation_alias=AliasChoices("ROUTE_LOGGER_TRACE", "TRACE"),
    )

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("controller_prefix")
    @classmethod
    def _prefix_ends_with_separator(cls, value: str) -> str:
        value = value.strip("/")
        return f"{value}/" if value else ""

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in PRODUCTION_ENVIRONMENTS

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    def resolved_app_root(self) -> str | None:
        """Return the application root without a trailing separator."""
        root = self.app_root if self.app_root is not None else os.getcwd()
        if not root:
            return None
        return root.rstrip("/") or "/"


def get_config() -> RouteLoggerConfig:
    """Return the module-level configuration, creating it on first use."""
    global _config

    with _CONFIG_LOCK:
        if _config is None:
            ensure_env_loaded()
            _config = RouteLoggerConfig()
        return _config


def configure(**values: Any) -> RouteLoggerConfig:
    """Update the module-level configuration in place.

    Example:
        >>> configure(enabled=False, tag="API")
    """
    config = get_config()
    for name, value in values.items():
        if name not in RouteLoggerConfig.model_fields:
            raise ConfigurationError(f"Unknown route_logger setting: {name}")
        setattr(config, name, value)
    return config


def reset_config() -> None:
    """Drop the module-level configuration so it is reloaded on next access."""
    global _config, _fallback_warned

    with _CONFIG_LOCK:
        _config = None
        _fallback_warned = False


def fallback_config(error: Exception) -> RouteLoggerConfig:
    """Return default settings after ``error`` prevented loading the real ones.

    The defaults are built without validation or environment access, so this
    never raises. The error is logged once until the next :func:`reset_config`.
    """
    global _fallback_warned

    with _CONFIG_LOCK:
        first = not _fallback_warned
        _fallback_warned = True
    if first:
        try:
            logger.warning("route_logger: invalid configuration, using defaults: %s", error)
        except Exception:
            pass
    return RouteLoggerConfig.model_construct()


def _host_values(host_config: Any) -> dict[str, Any]:
    if host_config is None:
        return {}
    if isinstance(host_config, RouteLoggerConfig):
        return {name: getattr(host_config, name) for name in host_config.model_fields_set}
    if isinstance(host_config, Mapping):
        return dict(host_config)
    raise ConfigurationError(
        f"Host configuration must be a mapping or RouteLoggerConfig, got {type(host_config).__name__}"
    )


def effective_config(
    host_config: Any = None,
    *,
    base: RouteLoggerConfig | None = None,
    **overrides: Any,
) -> RouteLoggerConfig:
    """Resolve the configuration for one request.

    Args:
        host_config: Host framework settings, a mapping or a RouteLoggerConfig
            whose explicitly set fields are applied.
        base: Configuration to merge onto. Defaults to :func:`get_config`.
        **overrides: Per-call values; ``None`` means "not overridden".

    Returns:
        RouteLoggerConfig: The merged configuration. The base instance is
        returned untouched when nothing overrides it.
    """
    if base is None:
        base = get_config()
    updates = {
        name: value
        for name, value in _host_values(host_config).items()
        if name in RouteLoggerConfig.model_fields
    }
    updates.update(
        {
            name: value
            for name, value in overrides.items()
            if value is not None and name in RouteLoggerConfig.model_fields
        }
    )
    if not updates:
        return base
    return base.model_copy(update=updates)


__all__ = [
    "DEFAULT_CONTROLLER_PREFIX",
    "DEFAULT_TAG",
    "RouteLoggerConfig",
    "configure",
    "effective_config",
    "ensure_env_loaded",
    "fallback_config",
    "get_config",
    "reset_config",
]
