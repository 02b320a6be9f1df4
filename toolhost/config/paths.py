"""Where toolhost keeps its files.

Layout under the base directory::

    toolhost.log
    plugins/
        list.yaml      catalog
        <id>.ts        plugin sources
        .env           KEY=VALUE pairs for plugins and services
        deno.json      runtime settings for the plugins dir
        temp_*.ts      per-execution scripts (short-lived)
"""

import os
from pathlib import Path

APP_NAME = "toolhost"


def default_base_dir() -> Path:
    """``$XDG_DATA_HOME/toolhost``, else ``~/.local/share/toolhost``."""
    if xdg := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg).expanduser() / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


class DataPaths:
    """Resolves the base directory once and hands out paths beneath it.

    Precedence: TOOLHOST_DATA_DIR, then ``data_dir`` from the config file
    (applied through set_base_dir), then default_base_dir().
    """

    _base_dir: Path | None = None

    @property
    def base(self) -> Path:
        if self._base_dir is None:
            self._base_dir = self._resolve_base_dir()
        self._base_dir.mkdir(parents=True, exist_ok=True)
        return self._base_dir

    def _resolve_base_dir(self) -> Path:
        if env_dir := os.environ.get("TOOLHOST_DATA_DIR"):
            return Path(env_dir).expanduser()
        return default_base_dir()

    def set_base_dir(self, path: str) -> None:
        """Use a directory from the config file; empty values are ignored."""
        if path:
            self._base_dir = Path(path).expanduser()

    def reset(self) -> None:
        """Forget the resolved directory (for testing)."""
        self._base_dir = None

    @property
    def plugins(self) -> Path:
        """Plugin sources, catalog, env file and scratch scripts."""
        path = self.base / "plugins"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def catalog(self) -> Path:
        return self.plugins / "list.yaml"

    @property
    def env_file(self) -> Path:
        return self.plugins / ".env"

    @property
    def log_file(self) -> Path:
        return self.base / "toolhost.log"


_paths: DataPaths | None = None


def get_data_paths() -> DataPaths:
    """Process-wide DataPaths instance."""
    global _paths
    if _paths is None:
        _paths = DataPaths()
    return _paths


def reset_data_paths() -> None:
    """Drop the process-wide instance (for testing)."""
    global _paths
    if _paths is not None:
        _paths.reset()
    _paths = None
