"""
MLCProxy Configuration Module
Centralized configuration management using pydantic-settings.
"""

from mlcproxy.config.settings import (
    Settings,
    ServerSettings,
    PathSettings,
    FeatureSettings,
    AuthSettings,
    SecuritySettings,
    TimeoutSettings,
    TunnelJoin,
    find_config_file,
    get_settings,
    load_settings,
    reload_settings,
)
from mlcproxy.config.logging_setup import configure_logging

__all__ = [
    "Settings",
    "ServerSettings",
    "PathSettings",
    "FeatureSettings",
    "AuthSettings",
    "SecuritySettings",
    "TimeoutSettings",
    "TunnelJoin",
    "find_config_file",
    "get_settings",
    "load_settings",
    "reload_settings",
    "configure_logging",
]
