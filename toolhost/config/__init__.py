"""toolhost configuration.

Settings come from a YAML file (see get_config_path) with TOOLHOST_*
environment overrides on top; data locations come from DataPaths.
"""

from toolhost.errors import ConfigError

from .loader import _apply_env_overrides, get_config_path, load_config
from .paths import DataPaths, default_base_dir, get_data_paths, reset_data_paths
from .schema import Config, RuntimeConfig, ServicesConfig

__all__ = [
    "Config",
    "ConfigError",
    "DataPaths",
    "RuntimeConfig",
    "ServicesConfig",
    "_apply_env_overrides",
    "default_base_dir",
    "get_config",
    "get_config_path",
    "get_data_paths",
    "load_config",
    "reload_config",
    "reset_data_paths",
]

# Kept on this module so tests can reset it with `toolhost.config._config = None`
_config: Config | None = None


def get_config() -> Config:
    """Process-wide config, loaded on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Re-read the config file and environment."""
    global _config
    _config = load_config()
    return _config
