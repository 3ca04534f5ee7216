"""Authentication and remote-client error taxonomy."""

from __future__ import annotations

from typing import Any, Optional


class McpLinkError(Exception):
    """Base class for all mcplink errors."""


class AuthenticationRequired(McpLinkError):
    """The user holds no usable credentials for the service."""

    def __init__(self, user_id: Any, service: str, detail: Optional[str] = None):
        self.user_id = user_id
        self.service = service
        self.detail = detail
        message = f"User {user_id} not authenticated for {service}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FlowExpired(McpLinkError):
    """A pending OAuth flow was resolved after its expiry."""

    def __init__(self, state: str, flow: Any = None):
        self.state = state
        self.flow = flow
        super().__init__("OAuth flow expired")


class FlowUnknown(McpLinkError):
    """A callback carried a state with no pending flow."""

    def __init__(self, state: str):
        self.state = state
        super().__init__("No pending OAuth flow for state")


class ExchangeFailed(McpLinkError):
    """The authorization code could not be exchanged for tokens."""

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"Token exchange failed for {service}: {detail}")


class ConnectionFailed(McpLinkError):
    """A remote connection failed for a reason other than authorization."""

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"Connection to {service} failed: {detail}")


class AuthorizationDeferred(McpLinkError):
    """Raised to end an in-band OAuth attempt once the redirect URL is captured.

    The authorization code arrives later through the callback listener.
    """

    def __init__(self) -> None:
        super().__init__("Authorization continues out of band")


class CallbackListenerError(McpLinkError):
    """The OAuth callback listener could not be started."""


class UnknownService(McpLinkError):
    """The service name is not configured."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Unknown service: {service}")


class RemoteToolError(McpLinkError):
    """A remote tool invocation failed at the transport level."""

    def __init__(
        self,
        message: str,
        service: str,
        tool_name: Optional[str] = None,
        retryable: bool = False,
    ):
        self.service = service
        self.tool_name = tool_name
        self.retryable = retryable
        super().__init__(message)
