"""Error formatting utilities.

Turns mcplink errors into messages fit for a chat reply. Unrecognized errors
fall through to ``format_unknown_error``.
"""

import json
from typing import Any

from ..auth.errors import (
    AuthenticationRequired,
    CallbackListenerError,
    ConnectionFailed,
    ExchangeFailed,
    FlowExpired,
    FlowUnknown,
    RemoteToolError,
    UnknownService,
)


def format_error(error: Any) -> str | None:
    """Format known application errors into user-friendly messages.

    Returns None if the error type is not recognized, allowing
    fallback to format_unknown_error.
    """
    from ..core.config import ConfigError

    if isinstance(error, AuthenticationRequired):
        return f"You are not connected to {error.service}. Please /login {error.service} first."
    if isinstance(error, FlowExpired):
        return "Authentication flow expired. Please try /login again."
    if isinstance(error, FlowUnknown):
        return "This login link is no longer valid. Please try /login again."
    if isinstance(error, ExchangeFailed):
        return "Token exchange failed. Please try /login again."
    if isinstance(error, UnknownService):
        return f"Unknown service \"{error.service}\"."
    if isinstance(error, ConnectionFailed):
        return f"Could not reach {error.service} right now. Please try again in a moment."
    if isinstance(error, RemoteToolError):
        if error.retryable:
            return f"{error.service} is not responding. Please try again in a moment."
        return f"{error.service} could not complete the request: {error}"
    if isinstance(error, CallbackListenerError):
        return f"Login is unavailable: {error}"
    if isinstance(error, ConfigError):
        return str(error)

    return None


def format_unknown_error(error: Any) -> str:
    """Format any error into a string representation.

    Handles Exception objects, serializable objects, and primitives.
    """
    if isinstance(error, Exception):
        import traceback
        if hasattr(error, '__traceback__') and error.__traceback__:
            return ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        return f"{error.__class__.__name__}: {str(error)}"

    if isinstance(error, dict) or isinstance(error, list):
        try:
            return json.dumps(error, indent=2)
        except (TypeError, ValueError):
            return "Unexpected error (unserializable)"

    return str(error)
