from collections.abc import Iterator
from pathlib import Path

import pytest

from mcplink.core.config import ENV_OVERRIDES, ConfigManager
from mcplink.util.log import Log, LogFormat, LogLevel


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    monkeypatch.setenv("MCPLINK_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("MCPLINK_DATA_DIR", str(tmp_path / "data"))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    yield
    ConfigManager.reset()


@pytest.fixture(autouse=True)
def _log_teardown() -> Iterator[None]:
    yield
    Log.configure(level=LogLevel.INFO, format=LogFormat.KV, console=False, file=False)
