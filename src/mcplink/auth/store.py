"""In-memory credential store.

Single source of truth for user sessions, per-service OAuth material,
dynamically registered clients and pending OAuth flows. Every operation is
a short synchronous critical section; nothing here waits on the network.

Session state is guarded by one lock per user so that different users never
serialize against each other. Pending flows live in their own index because
the OAuth callback carries only the state token.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..util.log import Log, Logger
from .models import (
    ClientRegistration,
    CredentialRecord,
    PendingAuth,
    PendingOAuthFlow,
    ServiceKey,
    StoredTokens,
    UserId,
    UserSession,
)


class CredentialStore:
    """Volatile store for sessions, credentials and pending flows."""

    def __init__(
        self,
        *,
        log: Optional[Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._log = log or Log.create({"service": "auth.store"})
        self._clock = clock
        self._sessions: Dict[UserId, UserSession] = {}
        self._user_locks: Dict[UserId, threading.Lock] = {}
        self._table_lock = threading.Lock()
        self._registrations: Dict[ServiceKey, ClientRegistration] = {}
        self._registration_lock = threading.Lock()
        self._flows: Dict[str, PendingOAuthFlow] = {}
        self._flow_lock = threading.Lock()

    def _lock(self, user_id: UserId) -> threading.Lock:
        lock = self._user_locks.get(user_id)
        if lock is not None:
            return lock
        with self._table_lock:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _session(self, user_id: UserId) -> UserSession:
        """Return the session, creating it. Caller holds the user lock."""
        session = self._sessions.get(user_id)
        if session is None:
            now = self._clock()
            session = UserSession(user_id=user_id, created_at=now, last_active_at=now)
            self._sessions[user_id] = session
        return session

    def _record(self, user_id: UserId, service: str) -> CredentialRecord:
        """Return the credential record, creating it. Caller holds the user lock."""
        session = self._session(user_id)
        record = session.credentials.get(service)
        if record is None:
            record = CredentialRecord()
            session.credentials[service] = record
        return record

    # Sessions

    def get_or_create_session(
        self,
        user_id: UserId,
        chat_context: Any = None,
        username: Optional[str] = None,
    ) -> UserSession:
        with self._lock(user_id):
            session = self._session(user_id)
            if chat_context is not None:
                session.chat_context = chat_context
            if username is not None:
                session.username = username
            session.last_active_at = self._clock()
            return session

    def get_session(self, user_id: UserId) -> Optional[UserSession]:
        return self._sessions.get(user_id)

    # Tokens

    def save_tokens(self, user_id: UserId, service: str, tokens: StoredTokens) -> None:
        """Store tokens and clear every in-flight login marker for the service.

        The markers are cleared under the same lock as the write, so a reader
        never sees fresh tokens next to a stale "please authenticate" prompt.
        """
        with self._lock(user_id):
            session = self._session(user_id)
            record = self._record(user_id, service)
            record.tokens = tokens
            record.authenticated_at = self._clock()
            record.pkce_verifier = None
            if session.pending_service in (None, service):
                session.authenticating = False
                session.pending_service = None
                session.pending_auth_url = None
        self._log.info("saved tokens", {"user_id": user_id, "target": service})

    def get_tokens(self, user_id: UserId, service: str) -> Optional[StoredTokens]:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        record = session.credentials.get(service)
        return record.tokens if record else None

    def clear_tokens(self, user_id: UserId, service: str) -> None:
        """Forget tokens and flow material. The client registration is kept."""
        with self._lock(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                return
            session.credentials.pop(service, None)
        self._log.info("cleared tokens", {"user_id": user_id, "target": service})

    def is_authenticated(self, user_id: UserId, service: str) -> bool:
        return self.get_tokens(user_id, service) is not None

    def list_authenticated_services(self, user_id: UserId) -> List[str]:
        session = self._sessions.get(user_id)
        if session is None:
            return []
        with self._lock(user_id):
            return [
                name
                for name, record in session.credentials.items()
                if record.tokens is not None
            ]

    # PKCE verifier and authorization endpoint

    def save_code_verifier(self, user_id: UserId, service: str, verifier: str) -> None:
        with self._lock(user_id):
            self._record(user_id, service).pkce_verifier = verifier

    def get_code_verifier(self, user_id: UserId, service: str) -> Optional[str]:
        session = self._sessions.get(user_id)
        record = session.credentials.get(service) if session else None
        return record.pkce_verifier if record else None

    def save_authorization_endpoint(self, user_id: UserId, service: str, endpoint: str) -> None:
        with self._lock(user_id):
            self._record(user_id, service).authorization_endpoint = endpoint

    def get_authorization_endpoint(self, user_id: UserId, service: str) -> Optional[str]:
        session = self._sessions.get(user_id)
        record = session.credentials.get(service) if session else None
        return record.authorization_endpoint if record else None

    # Client registrations

    def save_client_registration(
        self,
        user_id: UserId,
        service: str,
        registration: ClientRegistration,
    ) -> None:
        with self._registration_lock:
            self._registrations[ServiceKey(user_id, service)] = registration

    def get_client_registration(self, user_id: UserId, service: str) -> Optional[ClientRegistration]:
        return self._registrations.get(ServiceKey(user_id, service))

    def clear_client_registration(self, user_id: UserId, service: str) -> None:
        with self._registration_lock:
            self._registrations.pop(ServiceKey(user_id, service), None)

    # Pending authorization URL

    def set_pending_auth_url(self, user_id: UserId, service: str, url: str) -> None:
        with self._lock(user_id):
            session = self._session(user_id)
            session.pending_auth_url = url
            session.pending_service = service
            session.authenticating = True

    def get_pending_auth_url(self, user_id: UserId) -> Optional[PendingAuth]:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        with self._lock(user_id):
            if not session.pending_auth_url or not session.pending_service:
                return None
            return PendingAuth(url=session.pending_auth_url, service=session.pending_service)

    def clear_pending_auth(self, user_id: UserId, service: Optional[str] = None) -> None:
        """Clear the pending login, only if it is for ``service`` when given."""
        with self._lock(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                return
            if service is not None and session.pending_service not in (None, service):
                return
            session.authenticating = False
            session.pending_service = None
            session.pending_auth_url = None

    # Pending OAuth flows

    def register_pending_flow(self, flow: PendingOAuthFlow) -> None:
        with self._flow_lock:
            self._flows[flow.state] = flow

    def get_pending_flow(self, state: str) -> Optional[PendingOAuthFlow]:
        return self._flows.get(state)

    def remove_pending_flow(self, state: str) -> bool:
        with self._flow_lock:
            return self._flows.pop(state, None) is not None

    def take_pending_flow(self, state: str) -> Optional[PendingOAuthFlow]:
        """Look up and consume a pending flow in one step.

        Of any number of concurrent callers for one state, at most one
        receives the flow.
        """
        with self._flow_lock:
            return self._flows.pop(state, None)

    def purge_expired_flows(self, grace: float = 0.0) -> int:
        """Drop flows that expired more than ``grace`` seconds ago."""
        cutoff = self._clock() - grace
        with self._flow_lock:
            stale = [state for state, flow in self._flows.items() if flow.expires_at < cutoff]
            for state in stale:
                del self._flows[state]
        if stale:
            self._log.debug("purged expired flows", {"count": len(stale)})
        return len(stale)

    def pending_flow_count(self) -> int:
        return len(self._flows)
