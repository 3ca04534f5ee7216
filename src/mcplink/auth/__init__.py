"""Per-user OAuth for remote MCP services.

Example:
    store = CredentialStore()
    providers = ProviderFactory(store, services, redirect_uri=listener.redirect_uri)
    coordinator = FlowCoordinator(store, providers, on_auth_complete, channel)

    flow = coordinator.register(user_id, chat, "food")
    # hand the authorization URL for flow.state to the user; the callback
    # listener feeds (code, state) to the coordinator when they return
"""

from .errors import (
    AuthenticationRequired,
    AuthorizationDeferred,
    CallbackListenerError,
    ConnectionFailed,
    ExchangeFailed,
    FlowExpired,
    FlowUnknown,
    McpLinkError,
    RemoteToolError,
    UnknownService,
)
from .models import (
    AuthCompleteEvent,
    CallbackEvent,
    ClientRegistration,
    CredentialRecord,
    PendingAuth,
    PendingOAuthFlow,
    ServiceKey,
    StoredTokens,
    UserSession,
)
from .store import CredentialStore
from .provider import (
    CredentialProvider,
    ProviderFactory,
    SessionCredentialProvider,
    create_oauth_auth,
    exchange_code,
)
from .callback import CallbackListener
from .coordinator import FlowCoordinator, FlowOutcome

__all__ = [
    "AuthCompleteEvent",
    "AuthenticationRequired",
    "AuthorizationDeferred",
    "CallbackEvent",
    "CallbackListener",
    "CallbackListenerError",
    "ClientRegistration",
    "ConnectionFailed",
    "CredentialProvider",
    "CredentialRecord",
    "CredentialStore",
    "ExchangeFailed",
    "FlowCoordinator",
    "FlowExpired",
    "FlowOutcome",
    "FlowUnknown",
    "McpLinkError",
    "PendingAuth",
    "PendingOAuthFlow",
    "ProviderFactory",
    "RemoteToolError",
    "ServiceKey",
    "SessionCredentialProvider",
    "StoredTokens",
    "UnknownService",
    "UserSession",
    "create_oauth_auth",
    "exchange_code",
]
