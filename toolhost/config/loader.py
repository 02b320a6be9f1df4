"""Configuration loading and environment overrides for toolhost."""

import os
import warnings
from pathlib import Path

import yaml

from toolhost.errors import ConfigError

from .paths import get_data_paths
from .schema import Config


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides."""
    if command := os.environ.get("TOOLHOST_RUNTIME_COMMAND"):
        config.runtime.command = command
    if timeout := os.environ.get("TOOLHOST_RUNTIME_TIMEOUT"):
        try:
            config.runtime.timeout = float(timeout)
        except ValueError:
            raise ConfigError(f"TOOLHOST_RUNTIME_TIMEOUT is not a number: {timeout!r}") from None

    if service_command := os.environ.get("TOOLHOST_SERVICE_COMMAND"):
        config.services.command = service_command

    # Data directory (env var takes precedence - handled in DataPaths)
    if data_dir := os.environ.get("TOOLHOST_DATA_DIR"):
        config.data_dir = data_dir

    return config


def get_config_path() -> Path | None:
    """Get the path to the config file if it exists.

    Priority:
    1. TOOLHOST_CONFIG_PATH env var (explicit override)
    2. ./toolhost.yaml (current directory)
    3. ~/.config/toolhost/toolhost.yaml (user config)
    """
    if env_path := os.environ.get("TOOLHOST_CONFIG_PATH"):
        path = Path(env_path).expanduser()
        if path.exists():
            return path
        warnings.warn(f"TOOLHOST_CONFIG_PATH={env_path} does not exist", UserWarning)
        return None

    config_paths = [
        Path.cwd() / "toolhost.yaml",
        Path.home() / ".config" / "toolhost" / "toolhost.yaml",
    ]
    for path in config_paths:
        if path.exists():
            return path
    return None


def load_config() -> Config:
    """Load configuration from file with fallbacks."""
    config_path = get_config_path()

    if config_path:
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")
        config = _apply_env_overrides(Config.from_dict(data))
    else:
        config = _apply_env_overrides(Config())

    # Env var takes precedence in DataPaths
    paths = get_data_paths()
    if config.data_dir and not os.environ.get("TOOLHOST_DATA_DIR"):
        paths.set_base_dir(config.data_dir)

    return config
