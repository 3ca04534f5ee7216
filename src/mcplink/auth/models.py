"""Credential and OAuth flow models.

All of these live in memory only. A process restart starts every user
from scratch.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import BaseModel, Field

UserId = Union[int, str]


class ServiceKey(NamedTuple):
    """Composite key for per-user, per-service state."""
    user_id: UserId
    service: str


class StoredTokens(BaseModel):
    """OAuth tokens as held in memory.

    Attributes:
        access_token: The access token for API requests
        token_type: Token type, always Bearer for MCP servers
        refresh_token: Optional refresh token for token renewal
        expires_at: Unix timestamp when the token expires
        scope: OAuth scope granted
    """
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scope: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (time.time() if now is None else now)


class ClientRegistration(BaseModel):
    """OAuth client identity from dynamic registration.

    Kept apart from tokens because a registration outlives token
    refresh and revocation.
    """
    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[float] = None
    client_secret_expires_at: Optional[float] = None
    token_endpoint_auth_method: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)

    def secret_expired(self, now: Optional[float] = None) -> bool:
        if not self.client_secret_expires_at:
            return False
        return self.client_secret_expires_at < (time.time() if now is None else now)


class CredentialRecord(BaseModel):
    """OAuth material for one user and one service.

    ``tokens`` present means the service counts as authenticated.
    """
    tokens: Optional[StoredTokens] = None
    pkce_verifier: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    authenticated_at: Optional[float] = None


class UserSession(BaseModel):
    """Per-user session created on first interaction."""
    user_id: UserId
    chat_context: Any = None
    username: Optional[str] = None
    credentials: Dict[str, CredentialRecord] = Field(default_factory=dict)
    authenticating: bool = False
    pending_service: Optional[str] = None
    pending_auth_url: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    last_active_at: float = Field(default_factory=time.time)


class PendingAuth(BaseModel):
    """Authorization URL waiting to be delivered to a user."""
    url: str
    service: str


class PendingOAuthFlow(BaseModel):
    """Correlates an unguessable state token with the login that issued it."""
    user_id: UserId
    chat_context: Any = None
    service: str
    state: str
    created_at: float
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at


class CallbackEvent(BaseModel):
    """Authorization redirect as received by the callback listener."""
    code: str
    state: str


class AuthCompleteEvent(BaseModel):
    """Outcome of a consumed OAuth flow, delivered to the chat layer."""
    user_id: UserId
    chat_context: Any = None
    service: str
    success: bool
    error: Optional[str] = None
