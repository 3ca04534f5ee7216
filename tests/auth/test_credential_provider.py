from __future__ import annotations

import base64
import hashlib
import time
from urllib.parse import parse_qs, urlparse

import pytest
from mcp.client.auth import PKCEParameters
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import AnyUrl

from mcplink.auth.errors import AuthorizationDeferred, UnknownService
from mcplink.auth.models import ClientRegistration
from mcplink.auth.provider import CredentialProvider, SessionCredentialProvider
from mcplink.auth.store import CredentialStore
from mcplink.core.config_schema import ServiceOAuthConfig
from tests.helpers import REDIRECT_URI, make_factory

SDK_URL = (
    "https://auth.example.com/authorize?response_type=code&client_id=client-1"
    "&redirect_uri=http%3A%2F%2Flocalhost%3A3000%2Fcallback"
    "&state=sdk-state&code_challenge=sdk-challenge&code_challenge_method=S256"
    "&resource=https%3A%2F%2Fmcp.example.com%2Fmcp"
)


def _provider(store: CredentialStore, **kwargs) -> SessionCredentialProvider:
    return SessionCredentialProvider(store, 1, "food", redirect_uri=REDIRECT_URI, **kwargs)


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def test_session_provider_satisfies_protocol() -> None:
    assert isinstance(_provider(CredentialStore()), CredentialProvider)


@pytest.mark.anyio
async def test_state_is_stable_and_unguessable() -> None:
    store = CredentialStore()
    provider = _provider(store)

    state = await provider.state()

    assert state == await provider.state()
    assert len(state) >= 32
    assert state != await _provider(store).state()


@pytest.mark.anyio
async def test_supplied_state_is_used() -> None:
    provider = _provider(CredentialStore(), state="flow-state")
    assert await provider.state() == "flow-state"


@pytest.mark.anyio
async def test_redirect_rewrites_state_and_pkce() -> None:
    store = CredentialStore()
    provider = _provider(store, state="flow-state")

    await provider.redirect_to_authorization(SDK_URL)

    pending = store.get_pending_auth_url(1)
    assert pending is not None
    assert pending.service == "food"
    assert pending.url == provider.authorization_url
    assert provider.authorization_captured.is_set()

    parsed = urlparse(pending.url)
    query = parse_qs(parsed.query)
    verifier = store.get_code_verifier(1, "food")
    assert query["state"] == ["flow-state"]
    assert query["code_challenge"] == [_s256(verifier)]
    assert query["code_challenge_method"] == ["S256"]
    assert query["client_id"] == ["client-1"]
    assert query["redirect_uri"] == [REDIRECT_URI]
    assert 43 <= len(verifier) <= 128
    assert store.get_authorization_endpoint(1, "food") == "https://auth.example.com/authorize"
    assert store.get_session(1).authenticating is True


@pytest.mark.anyio
async def test_redirect_uses_sdk_pkce_parameters(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    # RFC 7636 appendix B
    fixed = PKCEParameters(
        code_verifier="dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
        code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
    )
    monkeypatch.setattr(PKCEParameters, "generate", lambda: fixed)
    store = CredentialStore()
    provider = _provider(store, state="flow-state")

    await provider.redirect_to_authorization(SDK_URL)

    query = parse_qs(urlparse(provider.authorization_url).query)
    assert query["code_challenge"] == [fixed.code_challenge]
    assert store.get_code_verifier(1, "food") == fixed.code_verifier
    assert _s256(fixed.code_verifier) == fixed.code_challenge


@pytest.mark.anyio
async def test_callback_handler_defers() -> None:
    with pytest.raises(AuthorizationDeferred):
        await _provider(CredentialStore()).callback_handler()


@pytest.mark.anyio
async def test_tokens_round_trip_through_store() -> None:
    store = CredentialStore()
    provider = _provider(store)
    assert await provider.get_tokens() is None

    before = time.time()
    await provider.set_tokens(OAuthToken(
        access_token="at",
        token_type="Bearer",
        expires_in=3600,
        refresh_token="rt",
        scope="read",
    ))

    stored = store.get_tokens(1, "food")
    assert stored.access_token == "at"
    assert stored.refresh_token == "rt"
    assert before + 3600 <= stored.expires_at <= time.time() + 3600

    tokens = await provider.get_tokens()
    assert tokens.access_token == "at"
    assert tokens.refresh_token == "rt"
    assert tokens.scope == "read"
    assert 3590 <= tokens.expires_in <= 3600


@pytest.mark.anyio
async def test_tokens_without_expiry() -> None:
    store = CredentialStore()
    provider = _provider(store)

    await provider.set_tokens(OAuthToken(access_token="at", token_type="Bearer"))

    assert store.get_tokens(1, "food").expires_at is None
    assert (await provider.get_tokens()).expires_in is None


@pytest.mark.anyio
async def test_configured_client_id_wins() -> None:
    store = CredentialStore()
    store.save_client_registration(1, "food", ClientRegistration(client_id="dynamic"))
    provider = _provider(store, oauth=ServiceOAuthConfig(client_id="static", client_secret="s3"))

    info = await provider.get_client_info()

    assert info.client_id == "static"
    assert info.client_secret == "s3"
    assert info.token_endpoint_auth_method == "client_secret_post"
    assert provider.client_metadata.token_endpoint_auth_method == "client_secret_post"


@pytest.mark.anyio
async def test_dynamic_registration_is_saved_and_returned() -> None:
    store = CredentialStore()
    provider = _provider(store)
    assert await provider.get_client_info() is None
    assert provider.client_metadata.token_endpoint_auth_method == "none"

    await provider.set_client_info(OAuthClientInformationFull(
        client_id="dynamic",
        redirect_uris=[AnyUrl(REDIRECT_URI)],
        token_endpoint_auth_method="none",
    ))

    assert store.get_client_registration(1, "food").redirect_uris == [REDIRECT_URI]
    info = await provider.get_client_info()
    assert info.client_id == "dynamic"
    assert info.client_secret is None


@pytest.mark.anyio
async def test_expired_client_secret_counts_as_unregistered() -> None:
    store = CredentialStore()
    store.save_client_registration(1, "food", ClientRegistration(
        client_id="dynamic",
        client_secret="old",
        client_secret_expires_at=time.time() - 10,
    ))

    assert await _provider(store).get_client_info() is None


def test_factory_builds_providers_for_configured_services() -> None:
    store = CredentialStore()
    factory = make_factory(store)

    provider = factory.create(1, "food", state="abc")

    assert provider.service == "food"
    assert provider.redirect_uri == REDIRECT_URI
    assert factory.server_url("food") == "https://mcp.example.com/mcp"
    with pytest.raises(UnknownService):
        factory.create(1, "unknown")
