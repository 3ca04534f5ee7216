"""Per-user OAuth credential provider for remote MCP servers.

The MCP Python SDK drives OAuth through ``OAuthClientProvider`` (an
``httpx.Auth``) which expects:

- a ``TokenStorage`` for tokens and dynamically registered client info
- a ``redirect_handler`` that receives the authorization URL
- a ``callback_handler`` that returns ``(code, state)``

A chat assistant cannot open a browser or block a request while a human
logs in, so ``SessionCredentialProvider`` records the authorization URL in
the credential store for the chat layer to deliver, and ends the in-band
attempt. The code comes back later through the callback listener and is
exchanged by ``exchange_code``.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from typing import Mapping, Optional, Protocol, runtime_checkable
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import httpx
from mcp.client.auth import OAuthClientProvider, PKCEParameters
from mcp.shared.auth import (
    OAuthClientInformationFull,
    OAuthClientMetadata,
    OAuthMetadata,
    OAuthToken,
)
from pydantic import AnyUrl, ValidationError

from ..core.config_schema import ServiceConfig, ServiceOAuthConfig
from ..util.log import Log, Logger
from .errors import AuthorizationDeferred, ExchangeFailed, UnknownService
from .models import ClientRegistration, StoredTokens, UserId
from .store import CredentialStore

TOKEN_EXCHANGE_TIMEOUT = 15.0


def new_state() -> str:
    """Generate an unguessable OAuth state token."""
    return secrets.token_urlsafe(32)


@runtime_checkable
class CredentialProvider(Protocol):
    """Capabilities an OAuth-aware remote client needs for one user and service."""

    user_id: UserId
    service: str

    @property
    def redirect_uri(self) -> str: ...

    @property
    def client_metadata(self) -> OAuthClientMetadata: ...

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]: ...

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None: ...

    async def get_tokens(self) -> Optional[OAuthToken]: ...

    async def set_tokens(self, tokens: OAuthToken) -> None: ...

    async def redirect_to_authorization(self, authorization_url: str) -> None: ...

    async def save_code_verifier(self, code_verifier: str) -> None: ...

    async def code_verifier(self) -> Optional[str]: ...

    async def state(self) -> str: ...


class SessionCredentialProvider:
    """CredentialProvider backed by the in-memory CredentialStore.

    Also implements the SDK ``TokenStorage`` protocol and supplies the
    SDK's redirect and callback handlers.
    """

    def __init__(
        self,
        store: CredentialStore,
        user_id: UserId,
        service: str,
        *,
        redirect_uri: str,
        oauth: Optional[ServiceOAuthConfig] = None,
        client_name: str = "mcplink",
        state: Optional[str] = None,
        log: Optional[Logger] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.service = service
        self.oauth = oauth or ServiceOAuthConfig()
        self.client_name = client_name
        self._redirect_uri = redirect_uri
        self._state = state
        self._log = log or Log.create({"service": "auth.provider"})
        self.authorization_url: Optional[str] = None
        self.authorization_captured = asyncio.Event()

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    @property
    def client_metadata(self) -> OAuthClientMetadata:
        return OAuthClientMetadata(
            redirect_uris=[AnyUrl(self._redirect_uri)],
            client_name=self.client_name,
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            token_endpoint_auth_method=(
                "client_secret_post" if self.oauth.client_secret else "none"
            ),
            scope=self.oauth.scope,
        )

    def _client_info(
        self,
        client_id: str,
        client_secret: Optional[str],
        auth_method: Optional[str] = None,
    ) -> OAuthClientInformationFull:
        return OAuthClientInformationFull(
            redirect_uris=[AnyUrl(self._redirect_uri)],
            client_id=client_id,
            client_secret=client_secret,
            token_endpoint_auth_method=auth_method or ("client_secret_post" if client_secret else "none"),
        )

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]:
        """Pre-registered client from config first, then dynamic registration."""
        if self.oauth.client_id:
            return self._client_info(self.oauth.client_id, self.oauth.client_secret)

        registration = self.store.get_client_registration(self.user_id, self.service)
        if registration is None:
            return None
        if registration.secret_expired():
            self._log.info("client secret expired, need to re-register", {
                "user_id": self.user_id,
                "target": self.service,
            })
            return None
        return self._client_info(
            registration.client_id,
            registration.client_secret,
            registration.token_endpoint_auth_method,
        )

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        self.store.save_client_registration(
            self.user_id,
            self.service,
            ClientRegistration(
                client_id=client_info.client_id,
                client_secret=client_info.client_secret,
                client_id_issued_at=client_info.client_id_issued_at,
                client_secret_expires_at=client_info.client_secret_expires_at,
                token_endpoint_auth_method=client_info.token_endpoint_auth_method,
                redirect_uris=[str(uri) for uri in (client_info.redirect_uris or [])],
            ),
        )
        self._log.info("saved dynamically registered client", {
            "user_id": self.user_id,
            "target": self.service,
            "client_id": client_info.client_id,
        })

    async def get_tokens(self) -> Optional[OAuthToken]:
        stored = self.store.get_tokens(self.user_id, self.service)
        if stored is None:
            return None
        return OAuthToken(
            access_token=stored.access_token,
            token_type="Bearer",
            refresh_token=stored.refresh_token,
            expires_in=(
                max(0, int(stored.expires_at - time.time()))
                if stored.expires_at
                else None
            ),
            scope=stored.scope,
        )

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self.store.save_tokens(
            self.user_id,
            self.service,
            StoredTokens(
                access_token=tokens.access_token,
                token_type=tokens.token_type,
                refresh_token=tokens.refresh_token,
                expires_at=(
                    time.time() + tokens.expires_in
                    if tokens.expires_in
                    else None
                ),
                scope=tokens.scope,
            ),
        )

    async def redirect_to_authorization(self, authorization_url: str) -> None:
        """Record the authorization URL for delivery through the chat.

        The URL is rewritten to carry this provider's correlation state and
        a PKCE challenge whose verifier is kept in the store, so the code can
        be exchanged after the in-band attempt has ended.
        """
        parsed = urlparse(authorization_url)
        params = dict(parse_qsl(parsed.query, keep_blank_values=True))

        pkce = PKCEParameters.generate()
        await self.save_code_verifier(pkce.code_verifier)
        params["state"] = await self.state()
        params["code_challenge"] = pkce.code_challenge
        params["code_challenge_method"] = "S256"

        endpoint = urlunparse(parsed._replace(query="", fragment=""))
        url = urlunparse(parsed._replace(query=urlencode(params), fragment=""))

        self.store.save_authorization_endpoint(self.user_id, self.service, endpoint)
        self.store.set_pending_auth_url(self.user_id, self.service, url)
        self.authorization_url = url
        self.authorization_captured.set()
        self._log.info("oauth redirect captured", {
            "user_id": self.user_id,
            "target": self.service,
            "state": params["state"],
        })

    async def callback_handler(self) -> tuple[str, Optional[str]]:
        raise AuthorizationDeferred()

    async def save_code_verifier(self, code_verifier: str) -> None:
        self.store.save_code_verifier(self.user_id, self.service, code_verifier)

    async def code_verifier(self) -> Optional[str]:
        return self.store.get_code_verifier(self.user_id, self.service)

    async def state(self) -> str:
        if self._state is None:
            self._state = new_state()
        return self._state

    def authorization_endpoint(self) -> Optional[str]:
        return self.store.get_authorization_endpoint(self.user_id, self.service)


class ProviderFactory:
    """Builds credential providers for configured services."""

    def __init__(
        self,
        store: CredentialStore,
        services: Mapping[str, ServiceConfig],
        *,
        redirect_uri: str,
        client_name: str = "mcplink",
        log: Optional[Logger] = None,
    ) -> None:
        self.store = store
        self.services = services
        self.redirect_uri = redirect_uri
        self.client_name = client_name
        self._log = log

    def service_config(self, service: str) -> ServiceConfig:
        config = self.services.get(service)
        if config is None:
            raise UnknownService(service)
        return config

    def server_url(self, service: str) -> str:
        return self.service_config(service).url

    def create(
        self,
        user_id: UserId,
        service: str,
        state: Optional[str] = None,
    ) -> SessionCredentialProvider:
        config = self.service_config(service)
        return SessionCredentialProvider(
            self.store,
            user_id,
            service,
            redirect_uri=self.redirect_uri,
            oauth=config.oauth,
            client_name=self.client_name,
            state=state,
            log=self._log,
        )


def create_oauth_auth(provider: SessionCredentialProvider, server_url: str) -> OAuthClientProvider:
    """Wrap a provider in the SDK's ``httpx.Auth`` OAuth implementation."""
    return OAuthClientProvider(
        server_url=server_url,
        client_metadata=provider.client_metadata,
        storage=provider,
        redirect_handler=provider.redirect_to_authorization,
        callback_handler=provider.callback_handler,
    )


def _metadata_urls(server_url: str, authorization_endpoint: Optional[str]) -> list[str]:
    """RFC 8414 discovery candidates, most specific first."""
    urls: list[str] = []
    base = urlparse(authorization_endpoint or server_url)
    origin = f"{base.scheme}://{base.netloc}"
    if authorization_endpoint:
        issuer_path = base.path.rsplit("/", 1)[0]
        if issuer_path:
            urls.append(f"{origin}/.well-known/oauth-authorization-server{issuer_path}")
    urls.append(f"{origin}/.well-known/oauth-authorization-server")
    urls.append(f"{origin}/.well-known/openid-configuration")
    return urls


async def _discover_token_endpoint(
    client: httpx.AsyncClient,
    server_url: str,
    authorization_endpoint: Optional[str],
) -> str:
    for url in _metadata_urls(server_url, authorization_endpoint):
        try:
            response = await client.get(url)
        except httpx.HTTPError:
            continue
        if response.status_code != 200:
            continue
        try:
            metadata = OAuthMetadata.model_validate_json(response.content)
        except ValidationError:
            continue
        return str(metadata.token_endpoint)

    base = urlparse(authorization_endpoint or server_url)
    return urljoin(f"{base.scheme}://{base.netloc}", "/token")


async def exchange_code(
    provider: CredentialProvider,
    server_url: str,
    code: str,
    *,
    authorization_endpoint: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> OAuthToken:
    """Exchange an authorization code for tokens and persist them.

    Args:
        provider: Provider for the user and service that started the flow
        server_url: URL of the remote MCP server (the token's resource)
        code: Authorization code from the callback
        authorization_endpoint: Endpoint the user was sent to, for discovery
        http_client: Optional client to reuse

    Returns:
        The issued tokens

    Raises:
        ExchangeFailed: If any step of the exchange fails
    """
    client_info = await provider.get_client_info()
    if client_info is None or not client_info.client_id:
        raise ExchangeFailed(provider.service, "no client registration")
    verifier = await provider.code_verifier()
    if not verifier:
        raise ExchangeFailed(provider.service, "no PKCE code verifier")

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": provider.redirect_uri,
        "client_id": client_info.client_id,
        "code_verifier": verifier,
        "resource": server_url,
    }
    auth: Optional[httpx.Auth] = None
    if client_info.client_secret:
        if client_info.token_endpoint_auth_method == "client_secret_basic":
            auth = httpx.BasicAuth(client_info.client_id, client_info.client_secret)
        else:
            data["client_secret"] = client_info.client_secret

    async def run(client: httpx.AsyncClient) -> OAuthToken:
        token_endpoint = await _discover_token_endpoint(client, server_url, authorization_endpoint)
        try:
            if auth is not None:
                response = await client.post(token_endpoint, data=data, auth=auth)
            else:
                response = await client.post(token_endpoint, data=data)
        except httpx.HTTPError as e:
            raise ExchangeFailed(provider.service, f"token request failed: {e}") from e
        if response.status_code != 200:
            raise ExchangeFailed(
                provider.service,
                f"token endpoint returned {response.status_code}",
            )
        try:
            return OAuthToken.model_validate_json(response.content)
        except ValidationError as e:
            raise ExchangeFailed(provider.service, "invalid token response") from e

    if http_client is not None:
        tokens = await run(http_client)
    else:
        async with httpx.AsyncClient(timeout=TOKEN_EXCHANGE_TIMEOUT) as client:
            tokens = await run(client)

    await provider.set_tokens(tokens)
    return tokens
