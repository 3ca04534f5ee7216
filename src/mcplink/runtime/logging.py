"""Runtime logging bootstrap helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..core.config_schema import Config
from ..util.log import Log, LogFormat, LogLevel


@dataclass(frozen=True)
class LogSettings:
    level: LogLevel
    format: LogFormat
    console: bool
    file: bool
    dev_file: bool


def _pick(explicit: Any, configured: Any, default: Any) -> Any:
    if explicit is not None:
        return explicit
    if configured is not None:
        return configured
    return default


def resolve_log_settings(
    config: Config,
    *,
    level: Optional[str] = None,
    format: Optional[str] = None,
    console: Optional[bool] = None,
    file: Optional[bool] = None,
    dev_file: Optional[bool] = None,
) -> LogSettings:
    """Merge explicit arguments over the config's ``logging`` section.

    A long-running service logs to both stderr and a file unless told
    otherwise.

    Raises:
        ValueError: The level or format name is not recognized
    """
    section = config.logging

    def configured(name: str) -> Any:
        return getattr(section, name) if section is not None else None

    return LogSettings(
        level=LogLevel.parse(_pick(level, configured("level"), None)),
        format=LogFormat.parse(_pick(format, configured("format"), None)),
        console=_pick(console, configured("console"), True),
        file=_pick(file, configured("file"), True),
        dev_file=_pick(dev_file, configured("dev_file"), False),
    )


def bootstrap_logging(config: Config, **overrides: Any) -> LogSettings:
    """Resolve settings and initialize the process logger."""
    settings = resolve_log_settings(config, **overrides)
    Log.configure(
        level=settings.level,
        format=settings.format,
        console=settings.console,
        file=settings.file,
        dev=settings.dev_file,
    )
    return settings
