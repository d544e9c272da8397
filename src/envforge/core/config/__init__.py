"""Envforge configuration: process settings and the global config provider."""

from envforge.core.config.provider import (
    BUILD_DEFAULTS,
    DOMAIN_DEFAULTS,
    LIFECYCLE_DEFAULTS,
    GlobalConfigProvider,
    StaticConfigSource,
)
from envforge.core.config.settings import EnvforgeSettings, clear_settings_cache, get_settings

__all__ = [
    "BUILD_DEFAULTS",
    "DOMAIN_DEFAULTS",
    "LIFECYCLE_DEFAULTS",
    "EnvforgeSettings",
    "GlobalConfigProvider",
    "StaticConfigSource",
    "clear_settings_cache",
    "get_settings",
]
