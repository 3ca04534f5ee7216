from __future__ import annotations

import pytest

from mcplink.auth.errors import (
    AuthenticationRequired,
    ConnectionFailed,
    ExchangeFailed,
    FlowExpired,
    RemoteToolError,
    UnknownService,
)
from mcplink.core.config import ConfigError
from mcplink.util.error import format_error, format_unknown_error


@pytest.mark.parametrize("error, expected", [
    (AuthenticationRequired(1, "food"), "Please /login food first."),
    (FlowExpired("state"), "Please try /login again."),
    (ExchangeFailed("food", "token endpoint returned 400"), "Token exchange failed."),
    (UnknownService("nope"), 'Unknown service "nope".'),
    (ConnectionFailed("food", "timed out"), "Could not reach food"),
    (RemoteToolError("timed out", "food", "search", retryable=True), "food is not responding."),
    (RemoteToolError("unknown tool", "food", "search"), "could not complete the request: unknown tool"),
    (ConfigError("/etc/mcplink.json", "file not found"), "file not found"),
])
def test_known_errors_have_chat_text(error: Exception, expected: str) -> None:
    assert expected in format_error(error)


def test_secrets_never_reach_chat_text() -> None:
    text = format_error(ExchangeFailed("food", "code=abc verifier=xyz"))

    assert "abc" not in text
    assert "xyz" not in text


def test_unknown_errors_fall_through() -> None:
    assert format_error(KeyError("x")) is None
    assert format_unknown_error(KeyError("x")) == "KeyError: 'x'"
    assert format_unknown_error({"a": 1}) == '{\n  "a": 1\n}'
    assert format_unknown_error(42) == "42"
