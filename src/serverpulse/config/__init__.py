"""Two-tier configuration (static + hot-reloadable dynamic keys)."""

from .manager import ConfigManager, get_config_manager, initialize_config, reset_config
from .registry import REGISTRY, ConfigKey, get_config_key, validate_config_value

__all__ = [
    "ConfigKey",
    "ConfigManager",
    "REGISTRY",
    "get_config_key",
    "get_config_manager",
    "initialize_config",
    "reset_config",
    "validate_config_value",
]
