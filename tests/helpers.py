"""Shared test helpers."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx

from mcplink.auth.models import ClientRegistration
from mcplink.auth.provider import ProviderFactory
from mcplink.auth.store import CredentialStore
from mcplink.core.config_schema import CallbackConfig, Config, ServiceConfig
from mcplink.remote.client import RemoteClient

SERVER_URL = "https://mcp.example.com/mcp"
AUTH_ENDPOINT = "https://auth.example.com/authorize"
TOKEN_ENDPOINT = "https://auth.example.com/oauth/token"
REDIRECT_URI = "http://localhost:3000/callback"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def services() -> Dict[str, ServiceConfig]:
    return {
        "food": ServiceConfig(url=SERVER_URL, label="Food"),
        "mart": ServiceConfig(url="https://mart.example.com/mcp"),
    }


def make_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = {
        "services": services(),
        "callback": CallbackConfig(host="127.0.0.1", port=0),
        "retry_delay": 0.0,
    }
    values.update(overrides)
    return Config(**values)


def make_factory(store: CredentialStore) -> ProviderFactory:
    return ProviderFactory(store, services(), redirect_uri=REDIRECT_URI)


def prepare_exchange(store: CredentialStore, user_id: Any = 1, service: str = "food") -> None:
    """Leave the state a redirect would: registration, verifier and endpoint."""
    store.save_client_registration(user_id, service, ClientRegistration(client_id="client-1"))
    store.save_code_verifier(user_id, service, "v" * 64)
    store.save_authorization_endpoint(user_id, service, AUTH_ENDPOINT)


class AuthServer:
    """httpx MockTransport handler for an RFC 8414 authorization server."""

    def __init__(self, token_status: int = 200, metadata: bool = True) -> None:
        self.token_status = token_status
        self.metadata = metadata
        self.token_requests: List[Dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/.well-known/oauth-authorization-server"):
            if not self.metadata:
                return httpx.Response(404)
            return httpx.Response(200, json={
                "issuer": "https://auth.example.com",
                "authorization_endpoint": AUTH_ENDPOINT,
                "token_endpoint": TOKEN_ENDPOINT,
                "response_types_supported": ["code"],
            })
        if request.url.path.startswith("/.well-known/"):
            return httpx.Response(404)
        if request.method == "POST":
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, content=json.dumps({
                "access_token": "access-1",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "refresh-1",
            }), headers={"content-type": "application/json"})
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


ConnectBehavior = Callable[["FakeRemoteClient", str, Any], Any]


class FakeRemoteClient(RemoteClient):
    """RemoteClient whose connect is scripted by a coroutine function."""

    connects: List[str] = []
    closed: List[str] = []
    behavior: Optional[ConnectBehavior] = None
    tools: List[Any] = []

    async def connect(self, url: str, headers=None, oauth_auth=None) -> None:
        type(self).connects.append(self.name)
        if type(self).behavior is not None:
            await type(self).behavior(self, url, oauth_auth)
        self._session = object()

    async def list_tools(self):
        return list(type(self).tools)

    async def close(self) -> None:
        type(self).closed.append(self.name)
        self._session = None


def fake_client_class(behavior: Optional[ConnectBehavior] = None) -> type[FakeRemoteClient]:
    """A fresh FakeRemoteClient subclass with its own call records."""
    return type(
        "ScriptedRemoteClient",
        (FakeRemoteClient,),
        {"connects": [], "closed": [], "behavior": behavior, "tools": []},
    )
