"""Structured logging with key/value, JSON and pretty output.

Loggers are tagged with a ``service`` name and cached per service. Every
record passes through ``scrub`` before it reaches a sink: OAuth secrets are
replaced by a marker and correlation ``state`` tokens are cut to a prefix that
still lets an operator match a callback against its flow.
"""

import json
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from ..core.global_paths import GlobalPath


class LogLevel(str, Enum):
    """Log severity levels, lowest first."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @property
    def priority(self) -> int:
        return list(LogLevel).index(self)

    @classmethod
    def parse(cls, value: str | None) -> "LogLevel":
        if value is None:
            return cls.INFO
        text = value.strip().upper()
        if text == "WARNING":
            text = "WARN"
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"invalid log level: {value}") from None


class LogFormat(str, Enum):
    """Log output format."""

    KV = "kv"
    JSON = "json"
    PRETTY = "pretty"

    @classmethod
    def parse(cls, value: str | None) -> "LogFormat":
        if value is None:
            return cls.KV
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"invalid log format: {value}") from None


REDACTED = "[redacted]"

# Keys whose values never reach a sink.
SECRET_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "code",
    "code_verifier",
    "client_secret",
})

STATE_KEYS = frozenset({"state"})

STATE_PREFIX = 8

KEEP_LOG_FILES = 10

HEADER_KEYS = ("time", "delta_ms", "level", "msg")


@dataclass
class LogConfig:
    """Process-wide sink configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.KV
    console: bool = False
    file: bool = False
    log_file_path: Optional[str] = None
    handle: Optional[TextIO] = None


_config = LogConfig()
_last_timestamp = time.time()


def truncate_state(value: Any) -> str:
    """Shorten a correlation token to a log-safe prefix."""
    text = str(value)
    if len(text) <= STATE_PREFIX:
        return text
    return text[:STATE_PREFIX] + "..."


def describe_error(error: BaseException, depth: int = 0) -> str:
    """Render an error together with its ``__cause__`` chain."""
    text = str(error) or type(error).__name__
    if error.__cause__ is not None and depth < 10:
        text += " Caused by: " + describe_error(error.__cause__, depth + 1)
    return text


def scrub(key: str, value: Any) -> Any:
    """Make one record field safe and serializable."""
    if key in SECRET_KEYS:
        return REDACTED
    if key in STATE_KEYS and value:
        return truncate_state(value)
    if isinstance(value, BaseException):
        return describe_error(value)
    if value is None or isinstance(value, (dict, list, tuple, int, float, bool)):
        return value
    return str(value)


def _kv_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    text = str(value)
    if text == "" or "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text, ensure_ascii=False)
    return text


def render(level: LogLevel, record: Dict[str, Any]) -> str:
    """Render a scrubbed record in the configured format."""
    if _config.format == LogFormat.JSON:
        return json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"

    fields = " ".join(
        f"{key}={_kv_value(value)}"
        for key, value in record.items()
        if key not in HEADER_KEYS
    )
    if _config.format == LogFormat.PRETTY:
        head = f"{record['time']} {level.value} {record['msg'] or ''}"
        tail = f" ({fields})" if fields else ""
        return f"{head}{tail} +{record['delta_ms']}ms\n"

    parts = [
        record["time"],
        f"+{record['delta_ms']}ms",
        f"level={record['level']}",
        f"msg={_kv_value(record['msg'])}",
        fields,
    ]
    return " ".join(part for part in parts if part) + "\n"


class Logger:
    """Structured logger bound to a set of tags."""

    def __init__(self, tags: Optional[Dict[str, Any]] = None):
        self.tags = tags or {}

    def _record(self, level: LogLevel, message: Any, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        global _last_timestamp

        now = time.time()
        delta_ms = int((now - _last_timestamp) * 1000)
        _last_timestamp = now

        fields = {**self.tags, **(extra or {})}
        return {
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "delta_ms": delta_ms,
            "level": level.value.lower(),
            "msg": scrub("msg", message),
            **{key: scrub(key, value) for key, value in fields.items() if value is not None},
        }

    def log(self, level: LogLevel, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        if level.priority < _config.level.priority:
            return
        if not (_config.console or (_config.file and _config.handle)):
            return
        line = render(level, self._record(level, message, extra))
        if _config.console:
            sys.stderr.write(line)
            sys.stderr.flush()
        if _config.file and _config.handle:
            _config.handle.write(line)
            _config.handle.flush()

    def debug(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.DEBUG, message, extra)

    def info(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.INFO, message, extra)

    def warn(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.WARN, message, extra)

    def error(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.ERROR, message, extra)


class Log:
    """Logger factory and sink configuration."""

    _loggers: Dict[str, Logger] = {}

    @classmethod
    def create(cls, tags: Optional[Dict[str, Any]] = None) -> Logger:
        """Return the logger for ``tags["service"]``, creating it once.

        Loggers without a service tag are not cached.
        """
        tags = tags or {}
        service = tags.get("service")
        if not isinstance(service, str) or not service:
            return Logger(tags=tags)
        if service not in cls._loggers:
            cls._loggers[service] = Logger(tags=tags)
        return cls._loggers[service]

    @classmethod
    def configure(
        cls,
        *,
        level: LogLevel | None = None,
        format: LogFormat | None = None,
        console: bool | None = None,
        file: bool | None = None,
        dev: bool = False,
    ) -> None:
        """Configure sinks and output format.

        File output goes to ``<data dir>/log``: ``dev.log`` when ``dev`` is
        set, otherwise a timestamped file of which the newest
        ``KEEP_LOG_FILES`` are kept.
        """
        if level is not None:
            _config.level = level
        if format is not None:
            _config.format = format
        if console is not None:
            _config.console = console
        _config.file = True if file is None else file

        cls.close()
        _config.log_file_path = None
        if not _config.file:
            return

        log_dir = Path(GlobalPath.log())
        log_dir.mkdir(parents=True, exist_ok=True)
        if dev:
            path = log_dir / "dev.log"
        else:
            cls._rotate(log_dir)
            stamp = datetime.now().strftime("%Y-%m-%dT%H%M%S")
            path = log_dir / f"{stamp}.log"

        _config.log_file_path = str(path)
        _config.handle = path.open("w", encoding="utf-8")

    @classmethod
    def file(cls) -> str:
        """Current log file path, or an empty string."""
        return _config.log_file_path or ""

    @classmethod
    def _rotate(cls, log_dir: Path) -> None:
        old = sorted(log_dir.glob("????-??-??T??????.log"), key=lambda p: p.stat().st_mtime)
        for path in old[: -(KEEP_LOG_FILES - 1) or None]:
            path.unlink(missing_ok=True)

    @classmethod
    def close(cls) -> None:
        if _config.handle:
            _config.handle.close()
            _config.handle = None
