"""User configuration.

Settings come from (lowest to highest precedence) defaults, a YAML file,
environment variables and finally CLI flags.
"""

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional
import os

import platformdirs
import yaml

from .constants import (
    DEFAULT_CACHE_SENTINEL,
    ENV_CACHE_PATH,
    ENV_CONFIG,
    ENV_GIT_EXECUTABLE,
    ENV_GIT_LFS_EXECUTABLE,
    ENV_INSECURE,
    ENV_LFS_SERVER,
)
from .errors import ConfigError

APP_NAME = "git-oci-sync"


@dataclass
class SyncSettings:
    """Settings shared by every command."""

    cache_path: Optional[str] = None
    git_executable: Optional[str] = None
    git_lfs_executable: Optional[str] = None
    lfs_server_url: Optional[str] = None
    insecure: Optional[bool] = None  # None: auto-detect per registry
    concurrency: int = 4

    def resolved_cache_path(self) -> Optional[Path]:
        """Cache directory, with "default" mapped to the platform cache dir."""
        if not self.cache_path:
            return None
        if self.cache_path == DEFAULT_CACHE_SENTINEL:
            return Path(platformdirs.user_cache_dir(APP_NAME))
        return Path(self.cache_path).expanduser()

    def merged(self, **overrides) -> "SyncSettings":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def default_config_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME)) / "config.yaml"


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def load_settings(config_path: Optional[Path] = None) -> SyncSettings:
    """Load settings from the YAML file (if present) and the environment."""
    settings = SyncSettings()

    path = config_path or Path(os.environ.get(ENV_CONFIG) or default_config_path())
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read configuration {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration {path} must be a mapping")

        known = {f.name for f in fields(SyncSettings)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")
        if "insecure" in data and data["insecure"] is not None:
            data["insecure"] = _parse_bool(data["insecure"])
        if "concurrency" in data:
            try:
                data["concurrency"] = int(data["concurrency"])
            except (TypeError, ValueError):
                raise ConfigError(f"concurrency must be an integer, got {data['concurrency']!r}")
        settings = replace(settings, **data)

    env_insecure = os.environ.get(ENV_INSECURE)
    return settings.merged(
        cache_path=os.environ.get(ENV_CACHE_PATH) or None,
        git_executable=os.environ.get(ENV_GIT_EXECUTABLE) or None,
        git_lfs_executable=os.environ.get(ENV_GIT_LFS_EXECUTABLE) or None,
        lfs_server_url=os.environ.get(ENV_LFS_SERVER) or None,
        insecure=_parse_bool(env_insecure) if env_insecure else None,
    )
