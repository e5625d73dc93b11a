"""
Configuration management for LiveCaption.

Loads the packaged defaults (livecaption/config.yaml) and deep-merges the
first readable user configuration file on top of them.

Configuration Priority (highest to lowest):
    1. Explicit path passed to CaptionConfig / --config
    2. User config: $XDG_CONFIG_HOME/LiveCaption/config.yaml
                    or ~/.config/LiveCaption/config.yaml (Linux/macOS)
                    or Documents/LiveCaption/config.yaml (Windows)
    3. ./config.yaml (current directory)
    4. Packaged defaults
"""

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from livecaption.core.events import UNTIL_NEXT, Duration, parse_duration

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

logger = logging.getLogger(__name__)


def get_user_config_dir() -> Path:
    """
    Get the user configuration directory based on platform.

    Returns:
        Path to user config directory:
        - Linux/macOS: ~/.config/LiveCaption/ (honours XDG_CONFIG_HOME)
        - Windows: ~/Documents/LiveCaption/
    """
    if sys.platform == "win32":
        return Path.home() / "Documents" / "LiveCaption"

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "LiveCaption"
    return Path.home() / ".config" / "LiveCaption"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dict."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class CaptionConfig:
    """
    Configuration manager.

    Packaged defaults are always loaded; a user file only needs the keys it
    wants to change.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize configuration.

        Args:
            config_path: Path to a user config file. If None, searches in priority order.
            overrides: Values merged last (used by the CLI and tests)
        """
        self.config: Dict[str, Any] = {}
        self._config_path = config_path
        self._loaded_from: Optional[Path] = None
        self._load_config()
        if overrides:
            _deep_merge(self.config, copy.deepcopy(overrides))

    def _find_config_candidates(self) -> list[Path]:
        """Return readable user config file candidates in priority order."""
        if self._config_path is not None:
            candidates = [self._config_path]
        else:
            candidates = [
                get_user_config_dir() / "config.yaml",
                Path.cwd() / "config.yaml",
            ]

        readable: list[Path] = []
        for path in candidates:
            if not (path.exists() and path.is_file()):
                continue
            try:
                with path.open("r", encoding="utf-8"):
                    pass
                readable.append(path)
            except (PermissionError, OSError):
                continue
        return readable

    def _load_config(self) -> None:
        """Load packaged defaults, then the first valid user file."""
        with DEFAULT_CONFIG_PATH.open("r", encoding="utf-8") as f:
            self.config = yaml.safe_load(f) or {}

        if self._config_path is not None and not self._config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self._config_path}")

        for config_file in self._find_config_candidates():
            try:
                with config_file.open("r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                if self._config_path is not None:
                    raise RuntimeError(
                        f"Could not load config file {config_file}: {e}"
                    ) from e
                logger.warning("Skipped invalid config file %s: %s", config_file, e)
                continue

            if not isinstance(loaded, dict):
                logger.warning("Ignoring config file %s: not a mapping", config_file)
                continue

            _deep_merge(self.config, loaded)
            self._loaded_from = config_file
            logger.info("Loaded configuration from: %s", config_file)
            return

    @property
    def loaded_from(self) -> Optional[Path]:
        """Return the path of the loaded user configuration file."""
        return self._loaded_from

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value by nested key path.

            config.get("audio", "sample_rate")          # config["audio"]["sample_rate"]
            config.get("logging", "level", default="INFO")
            config.get("window", default={})

        Raises:
            TypeError: If any key argument is not a string
        """
        if not keys:
            return self.config

        for i, key in enumerate(keys):
            if not isinstance(key, str):
                raise TypeError(
                    f"All configuration keys must be strings, got {type(key).__name__} "
                    f"for keys[{i}]: {repr(key)}. "
                    f"If you want to provide a default value, use the 'default=' keyword argument: "
                    f"cfg.get({', '.join(repr(k) for k in keys[:i] if isinstance(k, str))}, default={repr(key)})"
                )

        value: Any = self.config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    @property
    def audio(self) -> Dict[str, Any]:
        """Get audio capture configuration."""
        return self.config.get("audio", {})

    @property
    def window(self) -> Dict[str, Any]:
        """Get window assembly configuration."""
        return self.config.get("window", {})

    @property
    def inference(self) -> Dict[str, Any]:
        """Get inference configuration."""
        return self.config.get("inference", {})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging", {})

    @property
    def output_duration(self) -> Duration:
        """Duration attached to every OutputEvent."""
        return parse_duration(self.get("output", "duration", default=UNTIL_NEXT))


# Global config instance
_config: Optional[CaptionConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> CaptionConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = CaptionConfig(Path(config_path) if config_path else None)
    return _config


def set_config(config: Optional[CaptionConfig]) -> None:
    """Replace the global configuration instance (None resets it)."""
    global _config
    _config = config
