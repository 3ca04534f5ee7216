"""OAuth flow coordinator.

Consumes callback events from the listener queue, resolves each to the
pending flow registered for its state, exchanges the code and reports the
outcome to the chat layer. A state is consumed at most once: the lookup and
removal happen in one store operation, so duplicate callbacks for the same
state produce a single resolution.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from ..util.log import Log, Logger
from .errors import ExchangeFailed, FlowExpired, FlowUnknown
from .models import AuthCompleteEvent, CallbackEvent, PendingOAuthFlow, UserId
from .provider import ProviderFactory, exchange_code, new_state
from .store import CredentialStore

DEFAULT_FLOW_TIMEOUT = 300.0

MESSAGE_FLOW_EXPIRED = "Authentication flow expired. Please try /login again."
MESSAGE_EXCHANGE_FAILED = "Token exchange failed. Please try /login again."

AuthCompleteHandler = Callable[[AuthCompleteEvent], Union[None, Awaitable[None]]]


class FlowOutcome(str, Enum):
    """How a callback event was resolved."""
    RESOLVED = "resolved"
    EXPIRED = "expired"
    UNKNOWN = "unknown"
    FAILED = "failed"


class FlowCoordinator:
    """Correlates OAuth callbacks with the logins that started them."""

    def __init__(
        self,
        store: CredentialStore,
        providers: ProviderFactory,
        on_auth_complete: AuthCompleteHandler,
        channel: "asyncio.Queue[CallbackEvent]",
        *,
        flow_timeout: float = DEFAULT_FLOW_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
        log: Optional[Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.providers = providers
        self.on_auth_complete = on_auth_complete
        self.channel = channel
        self.flow_timeout = flow_timeout
        self._http_client = http_client
        self._log = log or Log.create({"service": "auth.coordinator"})
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def register(
        self,
        user_id: UserId,
        chat_context: Any,
        service: str,
        state: Optional[str] = None,
    ) -> PendingOAuthFlow:
        """Register a pending flow before its authorization URL is handed out.

        Args:
            user_id: Chat user starting the login
            chat_context: Opaque chat handle used to notify the user later
            service: Configured service name
            state: Correlation state, generated when omitted

        Returns:
            The registered flow
        """
        now = self._clock()
        flow = PendingOAuthFlow(
            user_id=user_id,
            chat_context=chat_context,
            service=service,
            state=state or new_state(),
            created_at=now,
            expires_at=now + self.flow_timeout,
        )
        self.store.register_pending_flow(flow)
        self._log.info("registered oauth flow", {
            "user_id": user_id,
            "target": service,
            "state": flow.state,
        })
        return flow

    def resolve(self, state: str) -> PendingOAuthFlow:
        """Consume the flow for a state.

        Raises:
            FlowUnknown: No flow is pending for the state
            FlowExpired: The flow existed but its deadline has passed
        """
        flow = self.store.take_pending_flow(state)
        if flow is None:
            raise FlowUnknown(state)
        if flow.is_expired(self._clock()):
            raise FlowExpired(state, flow)
        return flow

    async def handle(self, event: CallbackEvent) -> FlowOutcome:
        """Resolve one callback event and notify the chat layer."""
        try:
            flow = self.resolve(event.state)
        except FlowUnknown:
            self._log.warn("callback for unknown oauth state", {"state": event.state})
            return FlowOutcome.UNKNOWN
        except FlowExpired as e:
            flow = e.flow
            self._log.warn("oauth flow expired", {
                "user_id": flow.user_id,
                "target": flow.service,
                "state": event.state,
            })
            await self._notify(flow, success=False, error=MESSAGE_FLOW_EXPIRED)
            return FlowOutcome.EXPIRED

        try:
            provider = self.providers.create(flow.user_id, flow.service, state=flow.state)
            await exchange_code(
                provider,
                self.providers.server_url(flow.service),
                event.code,
                authorization_endpoint=provider.authorization_endpoint(),
                http_client=self._http_client,
            )
        except Exception as e:
            log_extra = {
                "user_id": flow.user_id,
                "target": flow.service,
                "error": e.detail if isinstance(e, ExchangeFailed) else str(e),
            }
            if not isinstance(e, ExchangeFailed):
                log_extra["traceback"] = traceback.format_exc()
            self._log.error("token exchange failed", log_extra)
            self.store.clear_pending_auth(flow.user_id, flow.service)
            await self._notify(flow, success=False, error=MESSAGE_EXCHANGE_FAILED)
            return FlowOutcome.FAILED

        self._log.info("oauth flow completed", {
            "user_id": flow.user_id,
            "target": flow.service,
        })
        await self._notify(flow, success=True)
        return FlowOutcome.RESOLVED

    async def _notify(
        self,
        flow: PendingOAuthFlow,
        *,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        event = AuthCompleteEvent(
            user_id=flow.user_id,
            chat_context=flow.chat_context,
            service=flow.service,
            success=success,
            error=error,
        )
        try:
            result = self.on_auth_complete(event)
            if hasattr(result, "__await__"):
                await result
        except Exception as e:
            self._log.error("auth completion handler failed", {
                "user_id": flow.user_id,
                "target": flow.service,
                "error": str(e),
                "traceback": traceback.format_exc(),
            })

    async def run(self) -> None:
        """Consume callback events until cancelled."""
        while True:
            event = await self.channel.get()
            try:
                await self.handle(event)
            except Exception as e:
                self._log.error("callback handling failed", {
                    "state": event.state,
                    "error": str(e),
                    "traceback": traceback.format_exc(),
                })
            finally:
                self.channel.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
