"""Per-user tool discovery cache."""

import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..auth.models import UserId
from ..util.log import Log, Logger
from .client import RemoteClient, RemoteToolDefinition

DEFAULT_TOOL_CACHE_TTL = 3600.0


class DiscoveredTool(BaseModel):
    """A tool together with the service that provides it."""
    service: str
    tool: RemoteToolDefinition


class ToolCache(BaseModel):
    """One service's tools for one user."""
    tools: List[DiscoveredTool] = Field(default_factory=list)
    discovered_at: float


class ToolDiscovery:
    """Lists tools from authenticated clients and caches them per user.

    Each (user, service) entry expires on its own, so rediscovering one
    service never extends the lifetime of another service's tools.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TOOL_CACHE_TTL,
        log: Optional[Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._log = log or Log.create({"service": "remote.discovery"})
        self._clock = clock
        self._cache: Dict[UserId, Dict[str, ToolCache]] = {}

    async def discover(
        self,
        user_id: UserId,
        service: str,
        client: RemoteClient,
    ) -> List[DiscoveredTool]:
        """List the service's tools and replace them in the user's cache.

        Listing failures are logged and yield an empty list; the cache is
        left untouched.
        """
        try:
            definitions = await client.list_tools()
        except Exception as e:
            self._log.error("tool discovery failed", {
                "user_id": user_id,
                "target": service,
                "error": str(e),
            })
            return []

        tools = [DiscoveredTool(service=service, tool=definition) for definition in definitions]
        self._log.info("discovered tools", {
            "user_id": user_id,
            "target": service,
            "count": len(tools),
            "tools": [tool.tool.name for tool in tools],
        })

        by_service = self._cache.setdefault(user_id, {})
        by_service.pop(service, None)
        by_service[service] = ToolCache(tools=tools, discovered_at=self._clock())
        return tools

    def _fresh(self, cache: ToolCache) -> bool:
        return self._clock() - cache.discovered_at < self.ttl

    def tools(self, user_id: UserId) -> List[DiscoveredTool]:
        by_service = self._cache.get(user_id, {})
        return [tool for cache in by_service.values() if self._fresh(cache) for tool in cache.tools]

    def tools_for_service(self, user_id: UserId, service: str) -> List[DiscoveredTool]:
        cache = self._cache.get(user_id, {}).get(service)
        if cache is None or not self._fresh(cache):
            return []
        return cache.tools

    def has_tools_for_service(self, user_id: UserId, service: str) -> bool:
        return bool(self.tools_for_service(user_id, service))

    def invalidate_user(self, user_id: UserId) -> None:
        self._cache.pop(user_id, None)

    def invalidate_service(self, user_id: UserId, service: str) -> None:
        by_service = self._cache.get(user_id)
        if by_service is not None:
            by_service.pop(service, None)
