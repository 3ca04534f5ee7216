"""Remote tool invocation with a single retry for transient failures."""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from ..auth.errors import AuthenticationRequired, RemoteToolError
from ..auth.models import UserId
from ..util.log import Log, Logger
from .client import RemoteClient, auth_http_error, find_http_status_error

DEFAULT_RETRY_DELAY = 1.0

RETRYABLE_MARKERS = ("timeout", "timed out", "econnreset", "connection reset", "503")


class ToolCallResult(BaseModel):
    """Outcome of one remote tool call."""
    service: str
    tool_name: str
    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False

    def text(self) -> str:
        return "\n".join(
            item["text"]
            for item in self.content
            if item.get("type") == "text" and isinstance(item.get("text"), str)
        )


def _status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    status_error = find_http_status_error(error)
    if status_error is not None:
        return status_error.response.status_code
    return None


def retryable(error: BaseException) -> bool:
    """Timeouts, connection resets and 503s are worth one more attempt."""
    if isinstance(error, (TimeoutError, ConnectionResetError, httpx.TimeoutException)):
        return True
    if _status(error) == 503:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def _content(result: Any) -> List[Dict[str, Any]]:
    items = []
    for item in getattr(result, "content", None) or []:
        if isinstance(item, BaseModel):
            items.append(item.model_dump(mode="json", exclude_none=True))
        elif isinstance(item, dict):
            items.append(item)
    return items


class ToolInvoker:
    """Calls tools on remote clients and normalizes the outcome."""

    def __init__(
        self,
        *,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: Optional[float] = None,
        log: Optional[Logger] = None,
    ) -> None:
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._log = log or Log.create({"service": "remote.invoker"})

    async def invoke(
        self,
        client: RemoteClient,
        service: str,
        tool_name: str,
        args: Dict[str, Any],
        *,
        user_id: Optional[UserId] = None,
    ) -> ToolCallResult:
        """Call a tool once.

        Tool-level errors come back as a result with ``is_error`` set.

        Raises:
            AuthenticationRequired: The server rejected the credentials
            RemoteToolError: The call failed at the transport level
        """
        self._log.info("invoking tool", {"target": service, "tool": tool_name, "user_id": user_id})
        try:
            if self.timeout is not None:
                result = await asyncio.wait_for(client.call_tool(tool_name, args), timeout=self.timeout)
            else:
                result = await client.call_tool(tool_name, args)
        except Exception as e:
            auth_error = auth_http_error(e)
            if auth_error is not None:
                raise AuthenticationRequired(user_id, service, auth_error.detail) from e
            message = str(e) or type(e).__name__
            raise RemoteToolError(message, service, tool_name, retryable(e)) from e

        call_result = ToolCallResult(
            service=service,
            tool_name=tool_name,
            content=_content(result),
            is_error=getattr(result, "isError", False) is True,
        )
        if call_result.is_error:
            self._log.warn("tool returned error", {
                "target": service,
                "tool": tool_name,
                "error": call_result.text(),
            })
        return call_result

    async def invoke_with_retry(
        self,
        client: RemoteClient,
        service: str,
        tool_name: str,
        args: Dict[str, Any],
        *,
        user_id: Optional[UserId] = None,
    ) -> ToolCallResult:
        """Call a tool, retrying once after ``retry_delay`` on transient errors."""
        try:
            return await self.invoke(client, service, tool_name, args, user_id=user_id)
        except RemoteToolError as e:
            if not e.retryable:
                raise
            self._log.info("retrying tool call", {
                "target": service,
                "tool": tool_name,
                "error": str(e),
            })
        await asyncio.sleep(self.retry_delay)
        return await self.invoke(client, service, tool_name, args, user_id=user_id)
