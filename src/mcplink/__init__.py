"""mcplink - per-user OAuth for remote MCP services.

Connects the users of a chat assistant to remote MCP servers, one OAuth
login and one authenticated client per (user, service).
"""

__version__ = "0.1.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import module components."""
    if name in ("GlobalPath",):
        from . import core
        return getattr(core, name)
    if name == "Log":
        from .util.log import Log
        return Log
    if name in ("CredentialStore", "CallbackListener", "FlowCoordinator", "ProviderFactory"):
        from . import auth
        return getattr(auth, name)
    if name in ("RemoteClient", "RemoteClientManager", "ToolInvoker", "ToolDiscovery"):
        from . import remote
        return getattr(remote, name)
    if name in ("Config", "ConfigManager", "ConfigError"):
        from .core import config
        return getattr(config, name)
    if name == "AppContext":
        from .runtime import AppContext
        return AppContext
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Version
    "__version__",
    # Core
    "GlobalPath",
    "Log",
    "Config",
    "ConfigManager",
    "ConfigError",
    # Auth
    "CredentialStore",
    "CallbackListener",
    "FlowCoordinator",
    "ProviderFactory",
    # Remote
    "RemoteClient",
    "RemoteClientManager",
    "ToolInvoker",
    "ToolDiscovery",
    # Runtime
    "AppContext",
]
