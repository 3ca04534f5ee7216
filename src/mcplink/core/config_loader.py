"""Config file loading: JSONC parsing, env substitution and deep merge."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict

import commentjson


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def substitute_env_vars(text: str) -> str:
    """Replace ``{env:VAR}`` patterns with environment variable values."""
    def replacer(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    return re.sub(r'\{env:([^}]+)\}', replacer, text)


def load_json_file(filepath: str) -> Dict[str, Any]:
    """Load a JSON or JSONC file. A missing file yields ``{}``.

    Raises:
        OSError: The file exists but cannot be read
        ValueError: The file is not valid JSONC or not an object
    """
    path = Path(filepath)
    if not path.exists():
        return {}

    text = path.read_text(encoding="utf-8")
    data = commentjson.loads(substitute_env_vars(text))
    if not isinstance(data, dict):
        raise ValueError("top-level value must be an object")
    return data
