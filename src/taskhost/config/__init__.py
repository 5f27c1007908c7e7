"""Settings model and loader for taskhost.yaml."""

from taskhost.config.models import HostSettings
from taskhost.config.parser import ConfigError, load_settings

__all__ = [
    "ConfigError",
    "HostSettings",
    "load_settings",
]
