from __future__ import annotations

import asyncio
import gc
from urllib.parse import parse_qs, urlparse

import pytest

import mcplink.remote.manager as manager_module
from mcplink.auth.errors import AuthenticationRequired, ConnectionFailed, UnknownService
from mcplink.auth.models import StoredTokens
from mcplink.auth.store import CredentialStore
from mcplink.remote.client import RemoteAuthError
from mcplink.remote.manager import RemoteClientManager
from tests.helpers import fake_client_class, make_factory

AUTH_URL = (
    "https://auth.example.com/authorize?response_type=code&client_id=cid"
    "&state=sdk&code_challenge=sdk&code_challenge_method=S256"
)


@pytest.fixture(autouse=True)
def _provider_as_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    # Hand the credential provider itself to connect() so scripted clients can
    # drive the redirect the way the SDK's OAuth flow would.
    monkeypatch.setattr(manager_module, "create_oauth_auth", lambda provider, server_url: provider)


def _manager(store: CredentialStore, client_class, **kwargs) -> RemoteClientManager:
    return RemoteClientManager(store, make_factory(store), client_factory=client_class, **kwargs)


def _authenticated_store() -> CredentialStore:
    store = CredentialStore()
    store.save_tokens(1, "food", StoredTokens(access_token="at"))
    return store


async def _redirect_then_defer(client, url, provider) -> None:
    await provider.redirect_to_authorization(AUTH_URL)
    await provider.callback_handler()


@pytest.mark.anyio
async def test_get_client_requires_tokens() -> None:
    client_class = fake_client_class()
    manager = _manager(CredentialStore(), client_class)

    with pytest.raises(AuthenticationRequired):
        await manager.get_client(1, "food")

    assert client_class.connects == []


@pytest.mark.anyio
async def test_get_client_rejects_unknown_service() -> None:
    manager = _manager(_authenticated_store(), fake_client_class())

    with pytest.raises(UnknownService):
        await manager.get_client(1, "nope")
    with pytest.raises(UnknownService):
        await manager.initiate_auth(1, "nope", "state")


@pytest.mark.anyio
async def test_get_client_caches_connection() -> None:
    client_class = fake_client_class()
    manager = _manager(_authenticated_store(), client_class)

    first = await manager.get_client(1, "food")
    second = await manager.get_client(1, "food")

    assert first is second
    assert first.connected
    assert manager.cached(1, "food") is first
    assert client_class.connects == ["food"]


@pytest.mark.anyio
async def test_concurrent_get_client_connects_once() -> None:
    async def slow(client, url, provider) -> None:
        await asyncio.sleep(0.05)

    client_class = fake_client_class(slow)
    manager = _manager(_authenticated_store(), client_class)

    clients = await asyncio.gather(*(manager.get_client(1, "food") for _ in range(5)))

    assert len({id(c) for c in clients}) == 1
    assert client_class.connects == ["food"]


@pytest.mark.anyio
async def test_invalidate_forces_fresh_connection() -> None:
    client_class = fake_client_class()
    manager = _manager(_authenticated_store(), client_class)

    first = await manager.get_client(1, "food")
    manager.invalidate_client(1, "food")
    second = await manager.get_client(1, "food")

    assert first is not second
    assert client_class.connects == ["food", "food"]
    assert client_class.closed == []


@pytest.mark.anyio
async def test_rejected_tokens_become_authentication_required() -> None:
    async def unauthorized(client, url, provider) -> None:
        raise RemoteAuthError(status_code=401, detail="token revoked")

    store = _authenticated_store()
    manager = _manager(store, fake_client_class(unauthorized))

    with pytest.raises(AuthenticationRequired, match="token revoked"):
        await manager.get_client(1, "food")

    assert store.is_authenticated(1, "food") is False
    assert manager.cached(1, "food") is None


@pytest.mark.anyio
async def test_captured_redirect_becomes_authentication_required() -> None:
    store = _authenticated_store()
    manager = _manager(store, fake_client_class(_redirect_then_defer))

    with pytest.raises(AuthenticationRequired):
        await manager.get_client(1, "food")

    assert store.is_authenticated(1, "food") is False
    assert store.get_pending_auth_url(1) is None


@pytest.mark.anyio
async def test_other_failures_raise_connection_failed() -> None:
    async def broken(client, url, provider) -> None:
        raise ConnectionError("connection refused")

    store = _authenticated_store()
    manager = _manager(store, fake_client_class(broken))

    with pytest.raises(ConnectionFailed, match="connection refused"):
        await manager.get_client(1, "food")

    assert store.is_authenticated(1, "food")


@pytest.mark.anyio
async def test_initiate_auth_returns_rewritten_url() -> None:
    store = CredentialStore()
    manager = _manager(store, fake_client_class(_redirect_then_defer))

    url = await manager.initiate_auth(1, "food", "flow-state")

    assert url is not None
    assert parse_qs(urlparse(url).query)["state"] == ["flow-state"]
    assert store.get_pending_auth_url(1).url == url
    assert store.get_code_verifier(1, "food") is not None
    assert manager.cached(1, "food") is None


@pytest.mark.anyio
async def test_initiate_auth_does_not_wait_for_hanging_connect() -> None:
    async def redirect_then_hang(client, url, provider) -> None:
        await provider.redirect_to_authorization(AUTH_URL)
        await asyncio.sleep(3600)

    manager = _manager(CredentialStore(), fake_client_class(redirect_then_hang))

    url = await asyncio.wait_for(manager.initiate_auth(1, "food", "s"), 5)

    assert url is not None


@pytest.mark.anyio
async def test_initiate_auth_connected_without_login() -> None:
    client_class = fake_client_class()
    manager = _manager(CredentialStore(), client_class)

    assert await manager.initiate_auth(1, "food", "s") is None
    assert manager.cached(1, "food") is not None


@pytest.mark.anyio
async def test_initiate_auth_times_out_without_url() -> None:
    async def hang(client, url, provider) -> None:
        await asyncio.sleep(3600)

    manager = _manager(CredentialStore(), fake_client_class(hang), auth_url_timeout=0.05)

    assert await manager.initiate_auth(1, "food", "s") is None
    assert manager.cached(1, "food") is None


@pytest.mark.anyio
async def test_initiate_auth_failure_without_url() -> None:
    async def refused(client, url, provider) -> None:
        raise ConnectionError("connection refused")

    manager = _manager(CredentialStore(), fake_client_class(refused))

    assert await manager.initiate_auth(1, "food", "s") is None
    assert manager.cached(1, "food") is None


@pytest.mark.anyio
@pytest.mark.parametrize("behavior", ["defer", "hang"])
async def test_initiate_auth_leaves_no_unretrieved_errors(behavior: str) -> None:
    async def redirect(client, url, provider) -> None:
        await provider.redirect_to_authorization(AUTH_URL)
        if behavior == "hang":
            await asyncio.sleep(3600)
        await provider.callback_handler()

    loop = asyncio.get_running_loop()
    reported: list[dict] = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        manager = _manager(CredentialStore(), fake_client_class(redirect))
        assert await manager.initiate_auth(1, "food", "s") is not None
        await asyncio.sleep(0)
        gc.collect()
    finally:
        loop.set_exception_handler(previous)

    assert reported == []


@pytest.mark.anyio
async def test_disconnect_user_and_shutdown_close_clients() -> None:
    client_class = fake_client_class()
    store = _authenticated_store()
    store.save_tokens(1, "mart", StoredTokens(access_token="at"))
    store.save_tokens(2, "food", StoredTokens(access_token="at"))
    manager = _manager(store, client_class)
    await manager.get_client(1, "food")
    await manager.get_client(1, "mart")
    await manager.get_client(2, "food")

    await manager.disconnect_user(1)

    assert sorted(client_class.closed) == ["food", "mart"]
    assert manager.cached(1, "food") is None
    assert manager.cached(2, "food") is not None

    await manager.shutdown()
    assert manager.keys() == []
    assert len(client_class.closed) == 3


@pytest.mark.anyio
async def test_disconnect_swallows_close_errors() -> None:
    client_class = fake_client_class()
    manager = _manager(_authenticated_store(), client_class)
    client = await manager.get_client(1, "food")

    async def failing_close() -> None:
        raise RuntimeError("already gone")

    client.close = failing_close
    await manager.disconnect_client(1, "food")

    assert manager.cached(1, "food") is None


@pytest.mark.anyio
async def test_connection_opened_alongside_url_is_closed() -> None:
    async def redirect_then_connect(client, url, provider) -> None:
        await provider.redirect_to_authorization(AUTH_URL)

    client_class = fake_client_class(redirect_then_connect)
    manager = _manager(CredentialStore(), client_class)

    assert await manager.initiate_auth(1, "food", "s") is not None
    assert client_class.closed == ["food"]
    assert manager.cached(1, "food") is None
