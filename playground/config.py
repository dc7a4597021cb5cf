"""Playground configuration.

Settings cascade, lowest to highest priority:
  1. Built-in defaults (PlaygroundConfig field defaults)
  2. User space: {$PLAYGROUND_USER_SPACE or ~}/.playground/config.yaml
  3. Project space: {project}/.playground/config.yaml
  4. Environment overrides: PLAYGROUND_PYTHON, PLAYGROUND_INDEX_URL

String values may reference environment variables as ${VAR:-default}.
"""

import logging
import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from playground.constants import (
    DEFAULT_MESSAGE_LIMIT,
    EXTENSION_PACKAGES,
    PLAYGROUND_DIR,
    RUNTIME_VERSION,
)
from playground.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"

_ENV_REF = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def get_user_space() -> Path:
    """Base path of the user space (home dir unless overridden)."""
    user_space = os.environ.get("PLAYGROUND_USER_SPACE")
    if user_space:
        return Path(user_space).expanduser()
    return Path.home()


def get_user_playground_path() -> Path:
    return get_user_space() / PLAYGROUND_DIR


@dataclass
class PlaygroundConfig:
    """Resolved runtime settings.

    Attributes:
        runtime_version: Pinned guest runtime version.
        index_url: Where the bootstrap code lives. None means the copy bundled
            with the package; an http(s) URL is a remote base; anything else
            is a local directory.
        python: Interpreter used to start the guest.
        extension_packages: Packages imported in the guest during bootstrap.
        cache_dir: Download cache for remote bootstrap code.
        startup_timeout: Seconds to wait for the guest handshake.
        fetch_timeout: Seconds allowed for downloading the bootstrap code.
        message_limit: Maximum size in bytes of one protocol line.
        figure_dpi: Resolution for rendered figures (None: matplotlib default).
    """

    runtime_version: str = RUNTIME_VERSION
    index_url: Optional[str] = None
    python: str = sys.executable
    extension_packages: List[str] = field(
        default_factory=lambda: list(EXTENSION_PACKAGES)
    )
    cache_dir: Optional[Path] = None
    startup_timeout: float = 30.0
    fetch_timeout: float = 30.0
    message_limit: int = DEFAULT_MESSAGE_LIMIT
    figure_dpi: Optional[int] = None

    def __post_init__(self):
        if self.cache_dir is None:
            self.cache_dir = get_user_playground_path() / "cache"
        else:
            self.cache_dir = Path(self.cache_dir).expanduser()

    @property
    def is_remote(self) -> bool:
        return bool(self.index_url) and self.index_url.startswith(
            ("http://", "https://")
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlaygroundConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.debug(f"Ignoring unknown config key: {key}")
                continue
            values[key] = _expand_env(value)

        _check_types(values)
        return cls(**values)


def load_config(project_path: Optional[Path] = None) -> PlaygroundConfig:
    """Load config with defaults → user → project → env cascade."""
    data: Dict[str, Any] = {}

    user_config_path = get_user_playground_path() / CONFIG_FILE
    if user_config_path.exists():
        data = _merge(data, _load_yaml(user_config_path))

    if project_path is not None:
        project_config_path = Path(project_path) / PLAYGROUND_DIR / CONFIG_FILE
        if project_config_path.exists():
            data = _merge(data, _load_yaml(project_config_path))

    if os.environ.get("PLAYGROUND_PYTHON"):
        data["python"] = os.environ["PLAYGROUND_PYTHON"]
    if os.environ.get("PLAYGROUND_INDEX_URL"):
        data["index_url"] = os.environ["PLAYGROUND_INDEX_URL"]

    return PlaygroundConfig.from_dict(data)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")
    return data


def _merge(base: Dict, override: Dict) -> Dict:
    """Deep merge override into base. Dicts merge, everything else replaces."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _expand_env(value: Any) -> Any:
    """Expand ${VAR:-default} references in strings (recursively in lists)."""
    if isinstance(value, str):

        def replace_var(match):
            return os.environ.get(match.group(1), match.group(2) or "")

        return _ENV_REF.sub(replace_var, value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    return value


_EXPECTED_TYPES = {
    "runtime_version": (str,),
    "index_url": (str, type(None)),
    "python": (str,),
    "extension_packages": (list,),
    "cache_dir": (str, Path, type(None)),
    "startup_timeout": (int, float),
    "fetch_timeout": (int, float),
    "message_limit": (int,),
    "figure_dpi": (int, type(None)),
}


def _check_types(values: Dict[str, Any]) -> None:
    for key, value in values.items():
        expected = _EXPECTED_TYPES[key]
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigurationError(
                f"Invalid type for {key}: {type(value).__name__}", field=key
            )
    for name in values.get("extension_packages", []):
        if not isinstance(name, str) or not name:
            raise ConfigurationError(
                f"Invalid extension package: {name!r}", field="extension_packages"
            )
