"""Remote MCP client.

Wraps an MCP SDK ``ClientSession`` over the StreamableHTTP transport and
owns the async context stack for transport and session lifecycle.
"""

import asyncio
import json
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from pydantic import BaseModel

from ..util.log import Log

log = Log.create({"service": "remote.client"})


class RemoteAuthError(Exception):
    """Structured authentication error from the transport layer."""
    def __init__(
        self,
        status_code: int,
        error_code: str = "unauthorized",
        detail: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.detail = detail
        message = f"MCP auth error ({status_code}): {error_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def _auth_detail(data: Dict[str, Any]) -> Optional[str]:
    for key in ("error_description", "message", "detail", "title"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _auth_code(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("error")
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        inner = value.get("code") or value.get("error")
        if isinstance(inner, (str, int)) and inner != "":
            return str(inner)

    for key in ("error_code", "code"):
        value = data.get(key)
        if isinstance(value, (str, int)) and value != "":
            return str(value)
    return None


def find_http_status_error(error: BaseException) -> Optional[httpx.HTTPStatusError]:
    """Find an ``httpx.HTTPStatusError`` in an error, its causes or its group."""
    seen = set()
    pending: List[BaseException] = [error]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, httpx.HTTPStatusError):
            return current
        if isinstance(current, BaseExceptionGroup):
            pending.extend(current.exceptions)
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        if current.__context__ is not None:
            pending.append(current.__context__)
    return None


def auth_http_error(error: BaseException) -> Optional[RemoteAuthError]:
    """Map a 401/403 response buried in ``error`` to a RemoteAuthError."""
    status_error = find_http_status_error(error)
    if status_error is None:
        return None

    response = status_error.response
    status_code = response.status_code
    if status_code not in {401, 403}:
        return None

    data: Dict[str, Any] = {}
    if "json" in response.headers.get("content-type", "").lower():
        try:
            body = response.json()
            if isinstance(body, dict):
                data = body
        except (json.JSONDecodeError, ValueError, httpx.ResponseNotRead):
            data = {}

    error_code = _auth_code(data) or "unauthorized"
    detail = _auth_detail(data)
    return RemoteAuthError(status_code=status_code, error_code=error_code, detail=detail)


async def _safe_aclose(stack: AsyncExitStack) -> None:
    """Close an AsyncExitStack, suppressing cleanup errors from MCP transports.

    The SDK's streamable_http_client uses anyio task groups internally.
    When a connection fails, closing the async context can raise
    BaseExceptionGroup or RuntimeError from cancel scope mismatches; these
    must not mask the real error.
    """
    try:
        await stack.aclose()
    except BaseException as e:
        if _is_external_cancellation():
            raise
        log.debug("transport cleanup error", {"error": str(e)})


def _is_external_cancellation() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def _connect_error(error: BaseException) -> BaseException:
    """Map a failed connect attempt to the error ``connect`` raises."""
    auth_error = auth_http_error(error)
    if auth_error is not None:
        auth_error.__cause__ = error
        return auth_error
    if isinstance(error, BaseExceptionGroup):
        wrapped = ConnectionError(f"MCP transport failed: {error}")
        wrapped.__cause__ = error
        return wrapped
    return error


class RemoteToolDefinition(BaseModel):
    """Tool definition advertised by a remote server."""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = {}


class RemoteClient:
    """One authenticated connection to a remote MCP server.

    The transport and session live in a task owned by the client. The SDK's
    anyio scopes are entered and exited in that task, so any task may call
    ``close``.
    """
    def __init__(self, name: str):
        self.name = name
        self._session: Optional[ClientSession] = None
        self._owner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None

    async def connect(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        oauth_auth: Optional[httpx.Auth] = None,
    ) -> None:
        """Connect via StreamableHTTP.

        Cancelling the caller tears the half-open transport down before the
        cancellation propagates.

        Args:
            url: Server URL
            headers: Optional HTTP headers
            oauth_auth: Optional httpx.Auth (OAuthClientProvider) for OAuth

        Raises:
            RemoteAuthError: The server rejected the credentials (401/403)
            ConnectionError: The transport failed
        """
        ready: "asyncio.Future[ClientSession]" = asyncio.get_running_loop().create_future()
        closing = asyncio.Event()
        owner = asyncio.create_task(
            self._run(url, headers, oauth_auth, ready, closing),
            name=f"mcp-transport:{self.name}",
        )
        try:
            await asyncio.wait({ready, owner}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            owner.cancel()
            await asyncio.wait({owner})
            if not owner.cancelled() and owner.exception() is not None:
                log.debug("transport cleanup error", {"target": self.name, "error": str(owner.exception())})
            if ready.done() and not ready.cancelled():
                ready.exception()
            raise

        if not ready.done():
            ready.cancel()
            cause = None if owner.cancelled() else owner.exception()
            raise ConnectionError("MCP transport ended during connect") from cause

        self._session = ready.result()
        self._owner = owner
        self._closing = closing
        log.debug("connected", {"target": self.name, "url": url})

    async def _run(
        self,
        url: str,
        headers: Optional[Dict[str, str]],
        oauth_auth: Optional[httpx.Auth],
        ready: "asyncio.Future[ClientSession]",
        closing: asyncio.Event,
    ) -> None:
        stack = AsyncExitStack()
        try:
            http_client_kwargs: Dict[str, Any] = {"follow_redirects": True}
            if headers:
                http_client_kwargs["headers"] = headers
            if oauth_auth is not None:
                http_client_kwargs["auth"] = oauth_auth
            http_client = await stack.enter_async_context(httpx.AsyncClient(**http_client_kwargs))
            transport_cm = streamable_http_client(url, http_client=http_client)
            read, write, _ = await stack.enter_async_context(transport_cm)
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except asyncio.CancelledError as e:
            await _safe_aclose(stack)
            if _is_external_cancellation():
                raise
            error = ConnectionError("MCP transport cancelled")
            error.__cause__ = e
            ready.set_exception(error)
            return
        except BaseExceptionGroup as eg:
            await _safe_aclose(stack)
            ready.set_exception(_connect_error(eg))
            return
        except Exception as e:
            await _safe_aclose(stack)
            ready.set_exception(_connect_error(e))
            return

        ready.set_result(session)
        try:
            await closing.wait()
        finally:
            await _safe_aclose(stack)
            log.debug("transport closed", {"target": self.name})

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def list_tools(self) -> List[RemoteToolDefinition]:
        """List available tools from the remote server."""
        if not self._session:
            return []

        result = await self._session.list_tools()
        tools = []
        for t in result.tools:
            tools.append(RemoteToolDefinition(
                name=t.name,
                description=t.description or "",
                input_schema=t.inputSchema if isinstance(t.inputSchema, dict) else {},
            ))
        return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]):
        """Call a tool on the remote server.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            CallToolResult from the SDK
        """
        if not self._session:
            raise RuntimeError(f"RemoteClient '{self.name}' is not connected")
        return await self._session.call_tool(name, arguments)

    async def close(self) -> None:
        """Close the connection and wait for the transport task to finish."""
        owner, closing = self._owner, self._closing
        self._session = None
        self._owner = None
        self._closing = None
        if owner is None or closing is None:
            return
        closing.set()
        try:
            await owner
        except asyncio.CancelledError:
            if _is_external_cancellation():
                raise
        except Exception as e:
            log.debug("transport cleanup error", {"target": self.name, "error": str(e)})
