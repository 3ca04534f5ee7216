"""Remote client manager.

Owns every remote connection. Clients are cached per (user, service) and
created under a per-key lock, so concurrent requests for one key share a
single connection while different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

from ..auth.errors import AuthenticationRequired, ConnectionFailed
from ..auth.models import ServiceKey, UserId
from ..auth.provider import ProviderFactory, SessionCredentialProvider, create_oauth_auth
from ..auth.store import CredentialStore
from ..util.log import Log, Logger
from .client import RemoteAuthError, RemoteClient, auth_http_error

DEFAULT_AUTH_URL_TIMEOUT = 10.0


def _describe(error: BaseException) -> str:
    if isinstance(error, TimeoutError):
        return "timed out"
    return str(error) or type(error).__name__


class RemoteClientManager:
    """Cache of authenticated remote clients keyed by user and service."""

    def __init__(
        self,
        store: CredentialStore,
        providers: ProviderFactory,
        *,
        auth_url_timeout: float = DEFAULT_AUTH_URL_TIMEOUT,
        client_factory: Callable[[str], RemoteClient] = RemoteClient,
        log: Optional[Logger] = None,
    ) -> None:
        self.store = store
        self.providers = providers
        self.auth_url_timeout = auth_url_timeout
        self.client_factory = client_factory
        self._log = log or Log.create({"service": "remote.manager"})
        self._clients: Dict[ServiceKey, RemoteClient] = {}
        self._locks: Dict[ServiceKey, asyncio.Lock] = {}

    def _lock(self, key: ServiceKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def cached(self, user_id: UserId, service: str) -> Optional[RemoteClient]:
        return self._clients.get(ServiceKey(user_id, service))

    async def _connect(
        self,
        client: RemoteClient,
        provider: SessionCredentialProvider,
        service: str,
        timeout: float,
    ) -> None:
        config = self.providers.service_config(service)
        async with asyncio.timeout(timeout):
            await client.connect(
                config.url,
                headers=config.headers,
                oauth_auth=create_oauth_auth(provider, config.url),
            )

    async def get_client(self, user_id: UserId, service: str) -> RemoteClient:
        """Return the cached client or connect with stored tokens.

        Never starts a login: without stored tokens, or when the server
        rejects them, AuthenticationRequired is raised and the chat layer
        decides whether to offer one.

        Raises:
            UnknownService: The service is not configured
            AuthenticationRequired: No usable credentials for the service
            ConnectionFailed: The connection failed for another reason
        """
        config = self.providers.service_config(service)
        key = ServiceKey(user_id, service)
        client = self._clients.get(key)
        if client is not None:
            return client

        async with self._lock(key):
            client = self._clients.get(key)
            if client is not None:
                return client

            if not self.store.is_authenticated(user_id, service):
                raise AuthenticationRequired(user_id, service)

            provider = self.providers.create(user_id, service)
            client = self.client_factory(service)
            try:
                await self._connect(client, provider, service, config.timeout)
            except Exception as e:
                raise self._connect_failure(user_id, service, provider, e) from e

            self._clients[key] = client
            self._log.info("client connected", {"user_id": user_id, "target": service})
            return client

    def _connect_failure(
        self,
        user_id: UserId,
        service: str,
        provider: SessionCredentialProvider,
        error: Exception,
    ) -> Exception:
        auth_error = error if isinstance(error, RemoteAuthError) else auth_http_error(error)
        if provider.authorization_captured.is_set() or auth_error is not None:
            self.store.clear_tokens(user_id, service)
            self.store.clear_pending_auth(user_id, service)
            self._log.warn("stored credentials rejected", {
                "user_id": user_id,
                "target": service,
                "error": str(auth_error or error),
            })
            return AuthenticationRequired(
                user_id,
                service,
                auth_error.detail if auth_error else None,
            )

        detail = _describe(error)
        self._log.error("client connection failed", {
            "user_id": user_id,
            "target": service,
            "error": detail,
        })
        return ConnectionFailed(service, detail)

    async def initiate_auth(
        self,
        user_id: UserId,
        service: str,
        state: Optional[str] = None,
    ) -> Optional[str]:
        """Start a connection without tokens and capture the authorization URL.

        The connection attempt races the provider recording the URL and is
        bounded by ``auth_url_timeout``. Once the URL is captured the attempt
        is cancelled and awaited, so its transport is torn down before this
        returns.

        Args:
            user_id: Chat user
            service: Configured service name
            state: Correlation state of the registered pending flow

        Returns:
            The authorization URL, or None when no URL was recorded. The
            client is cached when the service accepted the connection
            without a login.

        Raises:
            UnknownService: The service is not configured
        """
        self.providers.service_config(service)
        key = ServiceKey(user_id, service)

        async with self._lock(key):
            if key in self._clients:
                return None

            provider = self.providers.create(user_id, service, state=state)
            client = self.client_factory(service)
            attempt = asyncio.create_task(
                self._connect(client, provider, service, self.auth_url_timeout)
            )
            captured = asyncio.create_task(provider.authorization_captured.wait())
            try:
                await asyncio.wait({attempt, captured}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                captured.cancel()
                attempt.cancel()
                [outcome] = await asyncio.gather(attempt, return_exceptions=True)

            if provider.authorization_url:
                if not isinstance(outcome, BaseException):
                    await client.close()
                self._log.info("authorization url issued", {
                    "user_id": user_id,
                    "target": service,
                })
                return provider.authorization_url

            if isinstance(outcome, BaseException):
                self._log.warn("auth attempt ended without authorization url", {
                    "user_id": user_id,
                    "target": service,
                    "error": _describe(outcome),
                })
                return None

            self._clients[key] = client
            self._log.info("client connected without login", {"user_id": user_id, "target": service})
            return None

    async def disconnect_client(self, user_id: UserId, service: str) -> None:
        client = self._clients.pop(ServiceKey(user_id, service), None)
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            self._log.warn("failed to close client", {
                "user_id": user_id,
                "target": service,
                "error": str(e),
            })
        self._log.info("client disconnected", {"user_id": user_id, "target": service})

    async def disconnect_user(self, user_id: UserId) -> None:
        for key in [key for key in self._clients if key.user_id == user_id]:
            await self.disconnect_client(key.user_id, key.service)

    def invalidate_client(self, user_id: UserId, service: str) -> None:
        """Drop the cached client so the next get_client connects afresh."""
        if self._clients.pop(ServiceKey(user_id, service), None) is not None:
            self._log.debug("client invalidated", {"user_id": user_id, "target": service})

    def keys(self) -> List[ServiceKey]:
        return list(self._clients)

    async def shutdown(self) -> None:
        """Close every client."""
        for key in list(self._clients):
            await self.disconnect_client(key.user_id, key.service)
