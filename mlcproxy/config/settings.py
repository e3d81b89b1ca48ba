"""
MLCProxy Settings
Pydantic-based configuration with support for env vars and config.ini files.
"""

import configparser
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from mlcproxy.domain.value_objects.ip_address import NetworkRange

DEFAULT_ALLOWED_NETWORKS = ["127.0.0.1/32"]
DEFAULT_STATIC_DIR = Path(__file__).resolve().parent.parent / "stats" / "static"
CONFIG_FILE_NAME = "config.ini"


class TunnelJoin(str, Enum):
    """How a CONNECT tunnel ends once one direction finishes."""

    BOTH = "both"  # Wait for both directions to drain
    FIRST = "first"  # Close both sockets as soon as one direction ends


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class ServerSettings(BaseSettings):
    """Listener settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    host: str = Field(default="0.0.0.0", alias="PROXY_HOST")
    port: int = Field(default=3128, alias="PROXY_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


class PathSettings(BaseSettings):
    """Static asset and reporting route settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    static_dir: Path = Field(default=DEFAULT_STATIC_DIR, alias="PROXY_STATIC_DIR")
    stats_path: str = Field(default="/stat", alias="PROXY_STATS_PATH")
    api_path: str = Field(default="/api", alias="PROXY_API_PATH")

    @field_validator("stats_path", "api_path", mode="before")
    @classmethod
    def normalize_route(cls, v):
        if isinstance(v, str):
            v = "/" + v.strip().strip("/")
        return v


class FeatureSettings(BaseSettings):
    """Optional features."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    stats_host: str = Field(default="stats.local", alias="PROXY_STATS_HOST")
    dashboard_port: Optional[int] = Field(default=None, alias="PROXY_DASHBOARD_PORT")

    @field_validator("dashboard_port", mode="before")
    @classmethod
    def parse_dashboard_port(cls, v):
        return _blank_to_none(v)


class AuthSettings(BaseSettings):
    """
    Basic authentication settings.

    Credentials are kept in plain text and compared verbatim. This guards
    against casual use of the proxy, it is not a secure credential store.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    enable_auth: bool = Field(default=False, alias="PROXY_ENABLE_AUTH")
    realm: str = Field(default="MLCProxy Access", alias="PROXY_AUTH_REALM")
    credentials: Annotated[Dict[str, str], NoDecode] = Field(
        default_factory=dict,
        alias="PROXY_CREDENTIALS",
    )

    @field_validator("credentials", mode="before")
    @classmethod
    def parse_credentials(cls, v):
        # "user1:pass1,user2:pass2"; entries without a colon are ignored
        if isinstance(v, str):
            parsed = {}
            for entry in v.split(","):
                username, sep, password = entry.partition(":")
                if sep:
                    parsed[username.strip()] = password.strip()
            return parsed
        return v


class SecuritySettings(BaseSettings):
    """Client access settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    allowed_networks: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_NETWORKS),
        alias="PROXY_ALLOWED_NETWORKS",
    )

    @field_validator("allowed_networks", mode="before")
    @classmethod
    def parse_allowed_networks(cls, v):
        if isinstance(v, str):
            v = [n.strip() for n in v.split(",") if n.strip()]
        if not v:
            # Unset or blank means loopback only, never "allow everyone"
            return list(DEFAULT_ALLOWED_NETWORKS)
        return v


class TimeoutSettings(BaseSettings):
    """Upstream timeouts and tunnel behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    connect_timeout: float = Field(default=10.0, alias="PROXY_CONNECT_TIMEOUT")
    relay_timeout: Optional[float] = Field(default=None, alias="PROXY_RELAY_TIMEOUT")
    tunnel_idle_timeout: Optional[float] = Field(default=None, alias="PROXY_TUNNEL_IDLE_TIMEOUT")
    tunnel_join: TunnelJoin = Field(default=TunnelJoin.BOTH, alias="PROXY_TUNNEL_JOIN")

    @field_validator("relay_timeout", "tunnel_idle_timeout", mode="before")
    @classmethod
    def parse_optional_timeout(cls, v):
        return _blank_to_none(v)

    @field_validator("tunnel_join", mode="before")
    @classmethod
    def parse_tunnel_join(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class Settings(BaseSettings):
    """
    Main settings class that aggregates all config sections.

    Usage:
        from mlcproxy.config import get_settings

        settings = get_settings()
        print(settings.server.port)
        print(settings.security.allowed_networks)
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)

    def validate_settings(self) -> list[str]:
        """Validate cross-field constraints and return list of errors."""
        errors = []

        if not 0 < self.server.port < 65536:
            errors.append(f"Invalid proxy port: {self.server.port}")

        if self.features.dashboard_port is not None:
            if not 0 < self.features.dashboard_port < 65536:
                errors.append(f"Invalid dashboard port: {self.features.dashboard_port}")
            elif self.features.dashboard_port == self.server.port:
                errors.append("Dashboard port must differ from the proxy port")

        if self.auth.enable_auth and not self.auth.credentials:
            errors.append("Authentication enabled but no credentials configured")

        for cidr in self.security.allowed_networks:
            try:
                NetworkRange.from_cidr(cidr)
            except ValueError:
                errors.append(f"Invalid allowed network (CIDR expected, e.g. 10.0.0.1/32): {cidr}")

        if self.timeouts.connect_timeout <= 0:
            errors.append("Connect timeout must be positive")

        return errors


# INI section name -> (settings attribute, model class)
_INI_SECTIONS = {
    "server": ("server", ServerSettings),
    "paths": ("paths", PathSettings),
    "features": ("features", FeatureSettings),
    "auth": ("auth", AuthSettings),
    "security": ("security", SecuritySettings),
    "timeouts": ("timeouts", TimeoutSettings),
}


def find_config_file(search_dirs: Optional[list[Path]] = None) -> Optional[Path]:
    """
    Locate config.ini.

    Searches the current directory, then one and two levels up.

    Returns:
        Path of the first existing file, or None
    """
    if search_dirs is None:
        cwd = Path.cwd()
        search_dirs = [cwd, cwd.parent, cwd.parent.parent]

    for directory in search_dirs:
        candidate = Path(directory) / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Build settings from environment variables and an optional INI file.

    Values from the INI file take precedence over the environment. A
    relative static_dir is resolved against the INI file's directory.

    Args:
        config_path: Path to a config.ini file

    Returns:
        Settings: The application settings

    Raises:
        FileNotFoundError: If config_path does not exist
    """
    if config_path is None:
        return Settings()

    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path, encoding="utf-8")

    sections: Dict[str, Any] = {}
    for section_name, (attr, model) in _INI_SECTIONS.items():
        values = dict(parser.items(section_name)) if parser.has_section(section_name) else {}
        if attr == "paths" and values.get("static_dir"):
            static_dir = Path(values["static_dir"])
            if not static_dir.is_absolute():
                values["static_dir"] = str(path.parent.resolve() / static_dir)
        sections[attr] = model(**values)

    return Settings(**sections)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings (clears cache).

    Returns:
        Settings: Fresh settings instance
    """
    get_settings.cache_clear()
    return get_settings()
