"""Application runtime context and lifecycle container."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Literal, Optional, TypedDict

import httpx

from ..auth.callback import CallbackListener
from ..auth.coordinator import FlowCoordinator
from ..auth.errors import AuthenticationRequired, ConnectionFailed
from ..auth.models import AuthCompleteEvent, CallbackEvent, UserId
from ..auth.provider import ProviderFactory
from ..auth.store import CredentialStore
from ..core.config_schema import Config
from ..remote.client import RemoteClient
from ..remote.discovery import DiscoveredTool, ToolDiscovery
from ..remote.invoker import ToolCallResult, ToolInvoker
from ..remote.manager import RemoteClientManager
from ..util.log import Log

log = Log.create({"service": "runtime"})

FLOW_PURGE_GRACE = 3600.0
SWEEP_INTERVAL = 60.0

HealthStatus = Literal["ready", "failed"]

AuthCompleteHandler = Callable[[AuthCompleteEvent], Optional[Awaitable[None]]]


class NodeHealth(TypedDict):
    status: HealthStatus
    error: str | None


class AppContext:
    """Application-level service container.

    Created once per process from a Config and handed to the chat layer.
    Every component that needs the credential store, the client manager or
    the flow coordinator receives the instance owned here.
    """

    def __init__(
        self,
        config: Config,
        *,
        on_auth_complete: AuthCompleteHandler | None = None,
        http_client: httpx.AsyncClient | None = None,
        client_factory: Callable[[str], RemoteClient] = RemoteClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._handler = on_auth_complete
        self.store = CredentialStore(clock=clock)
        self.channel: asyncio.Queue[CallbackEvent] = asyncio.Queue()
        self.listener = CallbackListener(
            self.channel,
            host=config.callback.host,
            port=config.callback.port,
            public_host=config.callback.public_host,
        )
        self.providers = ProviderFactory(
            self.store,
            config.services,
            redirect_uri=self.listener.redirect_uri,
            client_name=config.client_name,
        )
        self.manager = RemoteClientManager(
            self.store,
            self.providers,
            auth_url_timeout=config.auth_url_timeout,
            client_factory=client_factory,
        )
        self.coordinator = FlowCoordinator(
            self.store,
            self.providers,
            self._on_auth_complete,
            self.channel,
            flow_timeout=config.flow_timeout,
            http_client=http_client,
            clock=clock,
        )
        self.invoker = ToolInvoker(retry_delay=config.retry_delay)
        self.discovery = ToolDiscovery(ttl=config.tool_cache_ttl, clock=clock)
        self._sweeper: asyncio.Task | None = None
        self.started = False
        self.health: Dict[str, NodeHealth] = {}

    @property
    def services(self) -> list[str]:
        return sorted(self.config.services)

    def set_auth_complete_handler(self, handler: AuthCompleteHandler) -> None:
        self._handler = handler

    async def startup(self) -> None:
        """Bind the callback listener and start background work.

        Raises:
            CallbackListenerError: The listener port cannot be bound
        """
        if self.started:
            return

        try:
            await self.listener.start()
        except Exception as e:
            self.health = {"listener": {"status": "failed", "error": str(e)}}
            log.error("callback listener failed to start", {"error": str(e)})
            raise
        # port 0 binds an ephemeral port; the redirect URI follows it
        self.providers.redirect_uri = self.listener.redirect_uri

        self.coordinator.start()
        self._sweeper = asyncio.create_task(self._sweep())
        self.health = {
            "listener": {"status": "ready", "error": None},
            "coordinator": {"status": "ready", "error": None},
        }
        self.started = True
        log.info("runtime started", {
            "services": self.services,
            "redirect_uri": self.listener.redirect_uri,
        })

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            self.store.purge_expired_flows(grace=FLOW_PURGE_GRACE)

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        await self.coordinator.stop()
        await self.manager.shutdown()
        await self.listener.stop()
        self.started = False
        log.info("runtime stopped")

    async def _on_auth_complete(self, event: AuthCompleteEvent) -> None:
        if event.success:
            self.manager.invalidate_client(event.user_id, event.service)
            self.discovery.invalidate_service(event.user_id, event.service)
        if self._handler is None:
            return
        result = self._handler(event)
        if hasattr(result, "__await__"):
            await result

    # Chat-layer contract

    async def initiate_login(
        self,
        user_id: UserId,
        chat_context: Any,
        service: str,
        username: str | None = None,
    ) -> str | None:
        """Start a login and return the authorization URL to deliver.

        Returns:
            The URL, or None when the user is already connected

        Raises:
            UnknownService: The service is not configured
            ConnectionFailed: No authorization URL could be obtained
        """
        self.providers.service_config(service)
        self.store.get_or_create_session(user_id, chat_context, username)
        if self.store.is_authenticated(user_id, service):
            return None

        flow = self.coordinator.register(user_id, chat_context, service)
        try:
            url = await self.manager.initiate_auth(user_id, service, flow.state)
        except BaseException:
            self.store.remove_pending_flow(flow.state)
            raise

        if url is not None:
            return url

        self.store.remove_pending_flow(flow.state)
        if self.manager.cached(user_id, service) is not None:
            return None
        raise ConnectionFailed(service, "no authorization URL was issued")

    async def logout(self, user_id: UserId, service: str) -> None:
        self.providers.service_config(service)
        await self.manager.disconnect_client(user_id, service)
        self.store.clear_tokens(user_id, service)
        self.discovery.invalidate_service(user_id, service)
        log.info("user logged out", {"user_id": user_id, "target": service})

    def status(self, user_id: UserId) -> Dict[str, bool]:
        connected = set(self.store.list_authenticated_services(user_id))
        return {service: service in connected for service in self.services}

    async def discover_tools(self, user_id: UserId, service: str) -> list[DiscoveredTool]:
        cached = self.discovery.tools_for_service(user_id, service)
        if cached:
            return cached
        client = await self.manager.get_client(user_id, service)
        return await self.discovery.discover(user_id, service, client)

    async def call_tool(
        self,
        user_id: UserId,
        service: str,
        tool_name: str,
        args: Dict[str, Any],
    ) -> ToolCallResult:
        """Call a tool on the user's connection to a service.

        Raises:
            AuthenticationRequired: The user must log in (again)
            RemoteToolError: The call failed after its retry
        """
        client = await self.manager.get_client(user_id, service)
        try:
            return await self.invoker.invoke_with_retry(
                client,
                service,
                tool_name,
                args,
                user_id=user_id,
            )
        except AuthenticationRequired:
            self.manager.invalidate_client(user_id, service)
            raise
