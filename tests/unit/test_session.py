"""Tests for session pools and the re-authentication protocol."""

from __future__ import annotations

import pytest

from docrecon.credentials import Credentials
from docrecon.errors import AccessDeniedError, AuthenticationError, ConfigError
from docrecon.session import (
    Declined,
    Retry,
    RunContext,
    SessionPool,
    SessionProvider,
    Side,
    Unavailable,
    url_host,
)
from tests.helpers import SOURCE_ROOT, FakeClient, InMemoryCredentialStore, cookies_for, default_connections

SOURCE_DOMAIN = "contoso.sharepoint.com"
SITE = f"{SOURCE_ROOT}/sites/hr"


class ReauthRecorder:
    def __init__(self, *responses: Credentials | None) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, tenant_name: str, tenant_domain: str) -> Credentials | None:
        self.calls.append((tenant_name, tenant_domain))
        return self.responses.pop(0) if self.responses else None


def _pool(provider, *, handler=None, context=None, side=Side.SOURCE):
    connection = provider.resolve_connection("src" if side is Side.SOURCE else "dst")
    return SessionPool(provider, context or RunContext(), side, connection, handler)


def test_url_host():
    assert url_host(" https://Contoso.SharePoint.com/sites/a ") == SOURCE_DOMAIN


def test_resolve_unknown_connection(provider):
    with pytest.raises(ConfigError):
        provider.resolve_connection("nope")


@pytest.mark.asyncio
async def test_one_client_per_domain(provider, world):
    async with _pool(provider) as pool:
        first = await pool.get(SOURCE_DOMAIN)
        assert await pool.get(SOURCE_DOMAIN.upper()) is first
        other = await pool.get("contoso-my.sharepoint.com")
        assert other is not first
    assert [client.closed for client in world.clients] == [1, 1]


@pytest.mark.asyncio
async def test_other_domains_fall_back_to_tenant_credentials(provider):
    async with _pool(provider) as pool:
        client = await pool.get("contoso-my.sharepoint.com")
        assert client.credentials.domain == SOURCE_DOMAIN


@pytest.mark.asyncio
async def test_throttle_count_survives_closing_clients(provider):
    async with _pool(provider) as pool:
        client = await pool.get(SOURCE_DOMAIN)
        client.throttle_retries = 3
        await pool.close_domain(SOURCE_DOMAIN)
        again = await pool.get(SOURCE_DOMAIN)
        assert again is not client
        again.throttle_retries = 2
        assert pool.throttle_retry_count == 5


@pytest.mark.asyncio
async def test_reauth_without_handler_is_unavailable(provider):
    outcome = await _pool(provider).reauthenticate(SOURCE_DOMAIN)
    assert isinstance(outcome, Unavailable)


@pytest.mark.asyncio
async def test_reauth_retry_saves_and_replaces_client(provider, credential_store, world):
    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "fresh"))
    async with _pool(provider, handler=handler) as pool:
        old = await pool.get(SOURCE_DOMAIN)
        outcome = await pool.reauthenticate(SOURCE_DOMAIN)

        assert isinstance(outcome, Retry)
        assert outcome.client is not old
        assert outcome.client.credentials.fed_auth == "fresh-fedauth"
        assert old.closed == 1
        assert await pool.get(SOURCE_DOMAIN) is outcome.client
    assert handler.calls == [("contoso", SOURCE_DOMAIN)]
    assert [c.fed_auth for c in credential_store.saved] == ["fresh-fedauth"]


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [None, Credentials(domain=SOURCE_DOMAIN)])
async def test_decline_latches_for_the_side(provider, response):
    context = RunContext()
    handler = ReauthRecorder(response, cookies_for(SOURCE_DOMAIN, "late"))
    pool = _pool(provider, handler=handler, context=context)

    assert isinstance(await pool.reauthenticate(SOURCE_DOMAIN), Declined)
    assert context.is_declined(Side.SOURCE)
    assert not context.is_declined(Side.TARGET)

    second = await pool.reauthenticate(SOURCE_DOMAIN)
    assert isinstance(second, Unavailable)
    assert len(handler.calls) == 1


@pytest.mark.asyncio
async def test_decline_on_one_side_does_not_block_the_other(provider):
    context = RunContext()
    context.decline(Side.SOURCE)
    handler = ReauthRecorder(cookies_for("fabrikam.sharepoint.com", "new"))
    pool = _pool(provider, handler=handler, context=context, side=Side.TARGET)
    assert isinstance(await pool.reauthenticate("fabrikam.sharepoint.com"), Retry)


@pytest.mark.asyncio
async def test_missing_credentials_run_reauth(world):
    store = InMemoryCredentialStore()
    provider = SessionProvider(store, default_connections(), client_factory=lambda c: FakeClient(world, c))

    with pytest.raises(AuthenticationError, match="no re-authentication handler"):
        await _pool(provider).get(SOURCE_DOMAIN)

    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "prompted"))
    client = await _pool(provider, handler=handler).get(SOURCE_DOMAIN)
    assert client.credentials.fed_auth == "prompted-fedauth"
    assert store.get_stored_credentials(SOURCE_DOMAIN) is not None


@pytest.mark.asyncio
async def test_rejected_prompted_credentials_are_not_prompted_again(world):
    world.add_site(SITE, "HR")
    world.rejected_cookies.add("typed-fedauth")
    provider = SessionProvider(
        InMemoryCredentialStore(), default_connections(), client_factory=lambda c: FakeClient(world, c)
    )
    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "typed"), cookies_for(SOURCE_DOMAIN, "second"))

    async with _pool(provider, handler=handler) as pool:
        with pytest.raises(AuthenticationError, match="cookies may have expired"):
            await pool.call_with_reauth(SOURCE_DOMAIN, lambda c: c.get_site_info(SITE))

    assert len(handler.calls) == 1
    assert [fed_auth for _, _, fed_auth in world.calls_for("site_info")] == ["typed-fedauth"]


@pytest.mark.asyncio
async def test_call_with_reauth_retries_once(provider, world):
    world.add_site(SITE, "HR")
    world.rejected_cookies.add("source-fedauth")
    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "fresh"))
    async with _pool(provider, handler=handler) as pool:
        info = await pool.call_with_reauth(SOURCE_DOMAIN, lambda c: c.get_site_info(SITE))
    assert info.title == "HR"
    assert [call[2] for call in world.calls_for("site_info")] == ["source-fedauth", "fresh-fedauth"]


@pytest.mark.asyncio
async def test_call_with_reauth_gives_up_after_second_auth_failure(provider, world):
    world.add_site(SITE, "HR")
    world.rejected_cookies.update({"source-fedauth", "fresh-fedauth"})
    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "fresh"), cookies_for(SOURCE_DOMAIN, "third"))
    async with _pool(provider, handler=handler) as pool:
        with pytest.raises(AuthenticationError):
            await pool.call_with_reauth(SOURCE_DOMAIN, lambda c: c.get_site_info(SITE))
    assert len(handler.calls) == 1


@pytest.mark.asyncio
async def test_call_with_reauth_reraises_original_when_declined(provider, world):
    world.add_site(SITE, "HR")
    world.rejected_cookies.add("source-fedauth")
    async with _pool(provider, handler=ReauthRecorder(None)) as pool:
        with pytest.raises(AuthenticationError, match="cookies may have expired"):
            await pool.call_with_reauth(SOURCE_DOMAIN, lambda c: c.get_site_info(SITE))


@pytest.mark.asyncio
async def test_access_denied_does_not_trigger_reauth(provider, world):
    world.add_site(SITE, "HR")
    world.fail("site_info", SITE, AccessDeniedError("Access denied", status=403))
    handler = ReauthRecorder(cookies_for(SOURCE_DOMAIN, "fresh"))
    async with _pool(provider, handler=handler) as pool:
        with pytest.raises(AccessDeniedError):
            await pool.call_with_reauth(SOURCE_DOMAIN, lambda c: c.get_site_info(SITE))
    assert handler.calls == []
