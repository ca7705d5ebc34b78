"""Settings persistence and configuration file loading."""

from .config_loader import (
    ConfigValidationError,
    load_agent_config,
    load_regex_config,
    load_session,
    load_user_profile,
)
from .settings import ContextLimitSettings, Settings, SettingsStore

__all__ = [
    "ConfigValidationError",
    "ContextLimitSettings",
    "Settings",
    "SettingsStore",
    "load_agent_config",
    "load_regex_config",
    "load_session",
    "load_user_profile",
]
