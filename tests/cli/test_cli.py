from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from mcplink import __version__
from mcplink.auth.errors import CallbackListenerError
from mcplink.cli.main import app


runner = CliRunner()


def _config_file(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "mcplink.json"
    path.write_text(text, encoding="utf-8")
    return path


def test_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"mcplink {__version__}" in result.stdout


def test_check_config_lists_services(tmp_path: Path) -> None:
    path = _config_file(tmp_path, """
    {
      "services": {
        "food": {"url": "https://food.example.com/mcp", "label": "Food", "oauth": {"clientId": "bot"}},
        "mart": {"url": "https://mart.example.com/mcp"}
      },
      "callback": {"port": 3100}
    }
    """)

    result = runner.invoke(app, ["check-config", "--config", str(path)])

    assert result.exit_code == 0
    assert "Redirect URI: http://localhost:3100/callback" in result.stdout
    assert "Food" in result.stdout
    assert "bot" in result.stdout
    assert "dynamic registration" in result.stdout


def test_check_config_without_services(tmp_path: Path) -> None:
    result = runner.invoke(app, ["check-config", "-c", str(_config_file(tmp_path, "{}"))])

    assert result.exit_code == 0
    assert "No services configured" in result.stdout


def test_check_config_reports_invalid_file(tmp_path: Path) -> None:
    path = _config_file(tmp_path, '{"services": {"food": {"url": "ftp://food"}}}')

    result = runner.invoke(app, ["check-config", "-c", str(path)])

    assert result.exit_code == 1
    assert "service url must be http(s)" in result.stdout


def test_serve_exits_when_listener_cannot_bind(monkeypatch, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    seen: dict[str, int] = {}

    async def fake_serve(config) -> None:
        seen["port"] = config.callback.port
        raise CallbackListenerError("port 4100 is already in use")

    monkeypatch.setattr("mcplink.cli.main._serve", fake_serve)

    result = runner.invoke(app, ["serve", "-c", str(_config_file(tmp_path, "{}")), "--port", "4100"])

    assert result.exit_code == 1
    assert seen == {"port": 4100}
    assert "already in use" in result.stdout


def test_serve_rejects_bad_log_level(tmp_path: Path) -> None:
    result = runner.invoke(app, ["serve", "-c", str(_config_file(tmp_path, "{}")), "--log-level", "loud"])

    assert result.exit_code == 1
    assert "invalid log level" in result.stdout
