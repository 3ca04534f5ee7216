"""Configuration management.

Loads the config file and merges environment overrides on top:

1. Config file (``--config`` path, or ``<config dir>/mcplink.json``)
2. Environment variable overrides (``MCPLINK_*``)
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from .config_loader import deep_merge, load_json_file
from .config_schema import (
    CallbackConfig,
    Config,
    LoggingConfig,
    ServiceConfig,
    ServiceOAuthConfig,
)
from .global_paths import GlobalPath
from ..util.log import Log

log = Log.create({"service": "config"})

__all__ = [
    "CallbackConfig",
    "Config",
    "ConfigError",
    "ConfigManager",
    "LoggingConfig",
    "ServiceConfig",
    "ServiceOAuthConfig",
]


class ConfigError(Exception):
    """Configuration error."""

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"Config error in {path}: {message}")


# env var -> (config path, parser)
ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "MCPLINK_CALLBACK_PORT": (("callback", "port"), int),
    "MCPLINK_CALLBACK_HOST": (("callback", "host"), str),
    "MCPLINK_CALLBACK_PUBLIC_HOST": (("callback", "publicHost"), str),
    "MCPLINK_LOG_LEVEL": (("logging", "level"), str),
    "MCPLINK_FLOW_TIMEOUT": (("flowTimeout",), float),
}


def _nest(path: Tuple[str, ...], value: Any) -> Dict[str, Any]:
    result: Any = value
    for key in reversed(path):
        result = {key: result}
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect config overrides from ``MCPLINK_*`` environment variables.

    Raises:
        ConfigError: A variable holds a value of the wrong type
    """
    environ = os.environ if environ is None else environ
    result: Dict[str, Any] = {}
    for name, (path, parse) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError:
            raise ConfigError(name, f"invalid value {raw!r}")
        result = deep_merge(result, _nest(path, value))
    return result


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        where = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{where}: {item.get('msg')}" if where else str(item.get("msg")))
    return "; ".join(parts)


class ConfigManager:
    """Loads and caches the process configuration."""

    _cache: Optional[Config] = None
    _path: Optional[str] = None

    @classmethod
    def default_path(cls) -> str:
        return GlobalPath.config_file()

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> Config:
        """Load, merge and validate configuration.

        Args:
            path: Config file; defaults to ``<config dir>/mcplink.json``

        Returns:
            Validated configuration

        Raises:
            ConfigError: The file is unreadable, malformed or invalid
        """
        filepath = str(path) if path is not None else cls.default_path()
        if path is not None and not Path(filepath).exists():
            raise ConfigError(filepath, "file not found")

        try:
            data = load_json_file(filepath)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(filepath, str(e)) from e
        except Exception as e:
            raise ConfigError(filepath, f"invalid JSON: {e}") from e
        if data:
            log.info("loaded config", {"path": filepath})

        data = deep_merge(data, env_overrides())

        try:
            config = Config.model_validate(data)
        except ValidationError as e:
            raise ConfigError(filepath, _validation_message(e)) from e

        cls._cache = config
        cls._path = filepath
        return config

    @classmethod
    def get(cls) -> Config:
        if cls._cache is None:
            return cls.load()
        return cls._cache

    @classmethod
    def path(cls) -> Optional[str]:
        return cls._path

    @classmethod
    def reset(cls) -> None:
        """Reset cached configuration."""
        cls._cache = None
        cls._path = None

